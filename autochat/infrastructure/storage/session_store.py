import asyncio
from pathlib import Path
from typing import Optional

import yaml

from autochat.domain.exceptions import BusinessError
from autochat.domain.session import Session


class YamlSessionStore:
    """把 Session 持久化为 YAML 文件，写入时持有锁，避免并发交换互相覆盖。"""

    def __init__(self, path: Optional[str | Path]):
        self._path = Path(path).expanduser() if path else None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def load(self) -> Session:
        if self._path is None or not self._path.exists():
            return Session()
        try:
            data = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise BusinessError(code="SESSION_READ_ERROR", message=str(e))
        if not isinstance(data, dict):
            raise BusinessError(code="SESSION_READ_ERROR", message=f"{self._path} is not a mapping")
        return Session.from_dict(data)

    async def save(self, session: Session) -> None:
        if self._path is None:
            return
        async with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                text = yaml.safe_dump(session.to_dict(), sort_keys=False, allow_unicode=True)
                self._path.write_text(text, encoding="utf-8")
            except OSError as e:
                raise BusinessError(code="SESSION_WRITE_ERROR", message=str(e))
