"""扁平文件存储：对话记录（transcript）与调试转储。

不提供任何持久化数据库，只负责按时间戳生成文件名并追加写入。
"""

import time
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO


def dump_debug_input(directory: str | Path, text: str) -> Path:
    """把无法解析的模型输出写入 error_<unix>.json，便于事后排查。"""

    base = Path(directory)
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"error_{int(time.time())}.json"
    path.write_text(text, encoding="utf-8")
    return path


class TranscriptFile:
    """log_<YYYYmmdd_HHMMSS>.txt 形式的对话记录文件，追加写入。"""

    def __init__(self, directory: Optional[str | Path]):
        self._fh: Optional[TextIO] = None
        self.path: Optional[Path] = None
        if directory:
            base = Path(directory)
            base.mkdir(parents=True, exist_ok=True)
            self.path = base / f"log_{datetime.now().strftime('%Y%m%d_%H%M%S')}.txt"
            self._fh = self.path.open("a", encoding="utf-8")

    def append(self, marker: str, text: str) -> None:
        if self._fh is None:
            return
        self._fh.write(f"{datetime.now().strftime('%Y-%m-%d %H-%M-%S')}: {marker}\n")
        self._fh.write(text + "\n")
        self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
