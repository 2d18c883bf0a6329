import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from autochat.config.settings import settings


class JsonFormatter(logging.Formatter):
    def __init__(self, redact: bool = False):
        super().__init__()
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self._redact:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(log_dir: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger("autochat")
    logger.setLevel(logging.INFO)
    # 重复调用（例如 CLI 覆盖 log_dir 后）时先移除旧 handler
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    logger.addHandler(console)

    directory = settings.log_dir if log_dir is None else log_dir
    if directory:
        path = Path(directory)
        path.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path / "agent.log", encoding="utf-8")
        fh.setLevel(logging.INFO)
        fh.setFormatter(JsonFormatter(redact=settings.log_redact_content))
        logger.addHandler(fh)
    return logger


logger = logging.getLogger("autochat")


def log_event(level: int, message: str, log_ctx: dict, **fields) -> None:
    """以结构化字段记录一条日志（JSON handler 会把字段展开到顶层）。"""

    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
