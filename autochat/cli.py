import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from autochat import __version__
from autochat.agents.modes import MODES, run
from autochat.config.settings import Settings, settings
from autochat.domain.exceptions import BusinessError, ChatClosedError
from autochat.infrastructure.logging.logger import logger, setup_logger

# 命令行参数 → Settings 字段
OVERRIDES = {
    "ai": "ai",
    "goal": "goal",
    "prompt": "prompt",
    "model": "model",
    "proxy": "proxy",
    "output": "output_dir",
    "log_dir": "log_dir",
    "debug_dir": "debug_dir",
    "steps": "steps",
    "bulk_input": "bulk_input",
    "bulk_output": "bulk_output",
    "google_key": "google_key",
    "google_cx": "google_cx",
    "openai_key": "openai_key",
    "openai_wait": "openai_wait",
    "openai_max_tokens": "openai_max_tokens",
    "bing_wait": "bing_wait",
    "bing_session": "bing_session_file",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autochat", description="Autonomous chat agent driver")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--ai", choices=["openai", "bing"], default=None, help="Chat backend")
    common.add_argument("--goal", default=None, help="Goal for auto/pair modes")
    common.add_argument("--prompt", default=None, help="Prompt overriding the goal template")
    common.add_argument("--model", default=None)
    common.add_argument("--proxy", default=None)
    common.add_argument("--output", default=None, help="Root directory for file commands")
    common.add_argument("--log-dir", default=None)
    common.add_argument("--debug-dir", default=None, help="Where unparsable replies are saved")
    common.add_argument("--steps", type=int, default=None, help="Max steps, 0 means unbounded")
    common.add_argument("--bulk-input", default=None)
    common.add_argument("--bulk-output", default=None)
    common.add_argument("--google-key", default=None)
    common.add_argument("--google-cx", default=None)
    common.add_argument("--openai-key", default=None)
    common.add_argument("--openai-wait", type=float, default=None)
    common.add_argument("--openai-max-tokens", type=int, default=None)
    common.add_argument("--bing-wait", type=float, default=None)
    common.add_argument("--bing-session", default=None, help="Session credentials YAML file")

    helps = {
        "chat": "Interactive chat on stdin/stdout",
        "auto": "Autonomous mode driven by commands",
        "pair": "Two chats collaborating on a goal",
        "bulk": "Run prompt groups from a file",
        "cmd": "Run the commands found in --prompt once",
    }
    for mode in MODES:
        sub.add_parser(mode, parents=[common], help=helps[mode])
    sub.add_parser("version", help="Print version")
    return parser


def apply_overrides(base: Settings, args: argparse.Namespace) -> Settings:
    update: Dict[str, Any] = {}
    for arg, field in OVERRIDES.items():
        value = getattr(args, arg, None)
        if value is not None:
            update[field] = value
    if not update:
        return base
    # model_validate 而不是 model_copy(update=...)，保证覆盖值同样经过校验
    data = base.model_dump()
    data.update(update)
    return Settings.model_validate(data)


async def _run(action: str, cfg: Settings) -> None:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        await run(action, cfg, cancel)
    except ChatClosedError:
        if not cancel.is_set():
            raise
        logger.log(logging.INFO, "cancelled")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "version":
        print(f"autochat {__version__}")
        return 0

    try:
        cfg = apply_overrides(settings, args)
    except ValueError as e:
        print(f"invalid configuration: {e}", file=sys.stderr)
        return 2
    setup_logger(cfg.log_dir)

    try:
        asyncio.run(_run(args.command, cfg))
    except BusinessError as e:
        logger.log(logging.ERROR, e.message, extra={"extra": {"code": e.code, **e.extra}})
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
