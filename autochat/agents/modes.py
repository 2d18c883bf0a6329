"""运行模式：chat / auto / pair / bulk / cmd。

每个模式都接收一份 Settings 与一个取消事件；取消事件被触发后，
所有对话流立即关闭，阻塞中的 read/write 抛 ChatClosedError。
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import AsyncIterator, List, Optional, TextIO

from autochat.agents.auto_agent import AutoAgent
from autochat.config.settings import Settings
from autochat.domain.exceptions import ExitRequested, ValidationError
from autochat.infrastructure.logging.logger import logger
from autochat.prompts import AUTO, AUTO_NO_BING, PAIR, render_prompt
from autochat.providers import ChatFactory, load_session
from autochat.providers.base import ChatStream
from autochat.providers.wrappers import ExitDetector, NotAvailable, TranscriptLogger
from autochat.tools.executor import CommandExecutor, default_commands
from autochat.tools.web import GoogleSearch, fetch_text

MODES = ("chat", "auto", "pair", "bulk", "cmd")


async def _stdin_lines() -> AsyncIterator[str]:
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        yield line


def _fetcher(cfg: Settings):
    async def fetch(url: str) -> str:
        return await fetch_text(url, proxy=cfg.proxy)

    return fetch


def _goal_prompt(cfg: Settings, template: str) -> str:
    if cfg.prompt:
        return cfg.prompt
    if not cfg.goal:
        raise ValidationError(code="MISSING_GOAL", message="goal or prompt is required")
    return render_prompt(template, cfg.goal)


async def run_chat(
    cfg: Settings,
    cancel: asyncio.Event,
    lines: Optional[AsyncIterator[str]] = None,
    out: TextIO = sys.stdout,
    factory: Optional[ChatFactory] = None,
) -> None:
    """交互模式：每行输入作为一条 prompt，回复直接打印。"""

    factory = factory or ChatFactory(cfg, cancel)
    chat = await factory.open(role="user", keep_first=0)
    try:
        async for line in lines or _stdin_lines():
            text = line.strip()
            if not text:
                continue
            reply = await chat.ask(text)
            out.write(reply.rstrip("\n") + "\n")
            out.flush()
    finally:
        await chat.close()
        await factory.aclose()


async def run_auto(cfg: Settings, cancel: asyncio.Event, factory: Optional[ChatFactory] = None) -> int:
    """自动模式：模型通过命令自主推进目标，返回执行的步数。"""

    session, _ = load_session(cfg)
    template = AUTO if session.cookie else AUTO_NO_BING
    prompt = _goal_prompt(cfg, template)

    if not cfg.output_dir:
        raise ValidationError(code="MISSING_OUTPUT", message="output is required")
    Path(cfg.output_dir).mkdir(parents=True, exist_ok=True)
    if cfg.ai == "bing":
        raise ValidationError(code="INVALID_AI", message="bing is not supported in auto mode")

    factory = factory or ChatFactory(cfg, cancel)
    chat: ChatStream = TranscriptLogger(await factory.open(role="system", keep_first=1), cfg.log_dir)
    secondary: ChatStream = NotAvailable()
    try:
        if session.cookie:
            secondary = await factory.open(ai="bing")
        else:
            logger.log(logging.INFO, "no bing session provided, skipping bing")

        # exit 命令复用取消事件：本步结束后循环退出，所有对话随之关闭
        commands = default_commands(
            cfg.output_dir,
            chat=secondary,
            search=GoogleSearch(cfg.google_key, cfg.google_cx, proxy=cfg.proxy).search,
            fetch=_fetcher(cfg),
            exit=cancel.set,
            cancel=cancel,
        )
        agent = AutoAgent(chat, CommandExecutor(commands, debug_dir=cfg.debug_dir), steps=cfg.steps, stop=cancel)
        return await agent.run(prompt)
    finally:
        await secondary.close()
        await chat.close()
        await factory.aclose()


async def run_pair(cfg: Settings, cancel: asyncio.Event, factory: Optional[ChatFactory] = None) -> int:
    """结对模式：两个对话互相转发回复，第一个对话说出退出短语时结束。"""

    prompt = _goal_prompt(cfg, PAIR)
    factory = factory or ChatFactory(cfg, cancel)
    chat1: ChatStream = TranscriptLogger(ExitDetector(await factory.open()), cfg.log_dir)
    chat2: Optional[ChatStream] = None
    steps = 0
    try:
        chat2 = await factory.open()
        await chat1.write(prompt)
        while not cancel.is_set():
            if cfg.steps > 0 and steps >= cfg.steps:
                break
            steps += 1
            try:
                reply = await chat1.read()
            except ExitRequested as e:
                logger.log(logging.INFO, e.message)
                break
            await chat1.write(await chat2.ask(reply))
        return steps
    finally:
        if chat2 is not None:
            await chat2.close()
        await chat1.close()
        await factory.aclose()


def load_bulk_input(path: str | Path) -> List[List[str]]:
    """读取 bulk 输入。

    .json 文件：字符串或字符串数组组成的数组，每个元素是一组 prompt；
    其他文件：以空行分隔的分组，组内每行一条 prompt。
    """

    path = Path(path)
    raw = path.read_text(encoding="utf-8")
    groups: List[List[str]] = []
    if path.suffix == ".json":
        data = json.loads(raw)
        if not isinstance(data, list) or not data:
            raise ValidationError(code="BAD_BULK_INPUT", message="no inputs found in bulk input file")
        for elem in data:
            if isinstance(elem, str):
                if elem:
                    groups.append([elem])
            elif isinstance(elem, list):
                if not all(isinstance(v, str) for v in elem):
                    raise ValidationError(
                        code="BAD_BULK_INPUT",
                        message="bulk input file must contain strings or arrays of strings",
                    )
                group = [v for v in elem if v]
                if group:
                    groups.append(group)
            else:
                raise ValidationError(
                    code="BAD_BULK_INPUT",
                    message="bulk input file must contain strings or arrays of strings",
                )
        return groups

    for block in raw.split("\n\n"):
        group = [line for line in block.split("\n") if line.strip()]
        if group:
            groups.append(group)
    return groups


async def run_bulk(cfg: Settings, cancel: asyncio.Event, factory: Optional[ChatFactory] = None) -> int:
    """批量模式：每组 prompt 使用一个新对话，结果写入 [[{"in","out"}]] JSON。"""

    if not cfg.bulk_input:
        raise ValidationError(code="MISSING_BULK_INPUT", message="bulk input is required")
    if not cfg.bulk_output:
        raise ValidationError(code="MISSING_BULK_OUTPUT", message="bulk output is required")
    groups = load_bulk_input(cfg.bulk_input)

    factory = factory or ChatFactory(cfg, cancel)
    output: List[List[dict]] = []
    try:
        for prompts in groups:
            if cancel.is_set():
                break
            chat = await factory.open(role="system", keep_first=1)
            messages = []
            try:
                for prompt in prompts:
                    if cancel.is_set():
                        break
                    logger.log(logging.INFO, prompt)
                    reply = await chat.ask(prompt)
                    logger.log(logging.INFO, reply)
                    messages.append({"in": prompt, "out": reply})
            finally:
                await chat.close()
            output.append(messages)
    finally:
        await factory.aclose()

    target = Path(cfg.bulk_output)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(output, indent=2, ensure_ascii=False), encoding="utf-8")
    return len(output)


async def run_cmd(cfg: Settings, cancel: asyncio.Event, out: TextIO = sys.stdout) -> list:
    """直接对 --prompt 文本执行一次命令解析与分发，打印 JSON 结果。"""

    commands = default_commands(
        cfg.output_dir,
        chat=NotAvailable(),
        search=GoogleSearch(cfg.google_key, cfg.google_cx, proxy=cfg.proxy).search,
        fetch=_fetcher(cfg),
        exit=lambda: None,
        cancel=cancel,
    )
    results = await CommandExecutor(commands, debug_dir=cfg.debug_dir).run(cfg.prompt)
    out.write(json.dumps(results, indent=2, ensure_ascii=False, default=str) + "\n")
    out.flush()
    return results


async def run(action: str, cfg: Settings, cancel: asyncio.Event) -> None:
    if action == "chat":
        await run_chat(cfg, cancel)
    elif action == "auto":
        await run_auto(cfg, cancel)
    elif action == "pair":
        await run_pair(cfg, cancel)
    elif action == "bulk":
        await run_bulk(cfg, cancel)
    elif action == "cmd":
        await run_cmd(cfg, cancel)
    else:
        raise ValidationError(code="UNKNOWN_ACTION", message=f"unknown action: {action}")
