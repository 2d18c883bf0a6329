import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Union

from autochat.domain.exceptions import ParseError
from autochat.domain.models import Value
from autochat.infrastructure.logging.logger import logger
from autochat.infrastructure.storage.files import dump_debug_input
from autochat.providers.base import ChatStream
from autochat.providers.wrappers import NotAvailable
from autochat.tools.definitions import Command, CommandRequest, arg_text
from autochat.tools.parser import normalize_name, parse

Search = Callable[[str], Awaitable[List[Dict[str, str]]]]
FetchText = Callable[[str], Awaitable[str]]
ExitFunc = Callable[[], None]

Result = Dict[str, Value]


class CommandExecutor:
    """命令分发器：持有一份显式的命令注册表（名称 → Command）。"""

    def __init__(self, commands: Mapping[str, Command], debug_dir: Optional[Union[str, Path]] = "."):
        self._commands = dict(commands)
        self.debug_dir = debug_dir

    async def run(self, text: str) -> List[Result]:
        """解析回复并执行其中的命令；解析失败时返回单条 error 结果。"""

        try:
            requests = parse(text)
        except ParseError as e:
            message = f"couldn't parse commands: {e.message}"
            logger.log(logging.WARNING, message)
            if self.debug_dir:
                try:
                    path = dump_debug_input(self.debug_dir, text)
                    logger.log(logging.INFO, "command: raw input saved", extra={"extra": {"path": str(path)}})
                except OSError as dump_err:
                    logger.log(logging.ERROR, f"command: couldn't save raw input: {dump_err}")
            return [{"error": message}]
        return await self.execute(requests)

    async def execute(self, requests: List[CommandRequest]) -> List[Result]:
        results: List[Result] = []
        for req in requests:
            name = normalize_name(req.name)
            cmd = self._commands.get(name)
            if cmd is None:
                logger.log(logging.WARNING, f"command: unknown {name}")
                continue
            try:
                result = await cmd.run(req.args)
            except Exception as e:
                result = _error(f"{name}: {e}")
            if result is None:
                continue
            results.append({name: result})
        return results


def _error(message: str) -> str:
    logger.log(logging.WARNING, message)
    return message


def _resolve_path(raw: str, root: Path) -> Optional[Path]:
    text = (raw or "").strip()
    if not text:
        return None
    candidate = Path(text).expanduser()
    resolved = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()
    if not _is_within_root(resolved, root):
        return None
    return resolved


def _is_within_root(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


class BashCommand:
    name = "bash"

    def __init__(self, output: Path, cancel: Optional[asyncio.Event] = None):
        self.output = output
        self.cancel = cancel

    async def run(self, args: List[Value]) -> Optional[Value]:
        command = arg_text(args, 0)
        if command is None:
            return _error("missing bash command")
        if not command:
            return _error("empty bash command")
        self.output.mkdir(parents=True, exist_ok=True)
        proc = await asyncio.create_subprocess_exec(
            "bash",
            "-c",
            command,
            cwd=str(self.output),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        communicate = asyncio.ensure_future(proc.communicate())
        waiters = {communicate}
        canceller = None
        if self.cancel is not None:
            canceller = asyncio.ensure_future(self.cancel.wait())
            waiters.add(canceller)
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if canceller is not None:
                canceller.cancel()
        if not communicate.done():
            proc.kill()
            await communicate
            return _error("bash command cancelled")
        stdout, _ = communicate.result()
        output = (stdout or b"").decode("utf-8", errors="replace")
        if proc.returncode:
            logger.log(
                logging.WARNING,
                "command: bash exited with non-zero status",
                extra={"extra": {"returncode": proc.returncode}},
            )
        return output


class BingCommand:
    name = "bing"

    def __init__(self, chat: ChatStream):
        self.chat = chat

    async def run(self, args: List[Value]) -> Optional[Value]:
        query = arg_text(args, 0)
        if query is None:
            return _error("missing bing message")
        if not query:
            return _error("empty bing message")
        try:
            await self.chat.write(query)
        except Exception as e:
            return _error(f"couldn't write message to bing: {e}")
        try:
            return await self.chat.read()
        except Exception as e:
            return _error(f"couldn't read message from bing: {e}")


class GoogleCommand:
    name = "google"

    def __init__(self, search: Optional[Search]):
        self.search = search

    async def run(self, args: List[Value]) -> Optional[Value]:
        query = arg_text(args, 0)
        if query is None:
            return _error("missing google query")
        if not query:
            return _error("empty google query")
        if self.search is None:
            return _error("google search not configured")
        try:
            return await self.search(query)
        except Exception as e:
            return _error(f"couldn't search google: {e}")


class WebCommand:
    name = "web"

    def __init__(self, fetch: Optional[FetchText]):
        self.fetch = fetch

    async def run(self, args: List[Value]) -> Optional[Value]:
        url = arg_text(args, 0)
        if url is None:
            return _error("missing web url")
        if not url:
            return _error("empty web url")
        if self.fetch is None:
            return _error("web fetch not configured")
        try:
            return await self.fetch(url)
        except Exception as e:
            return _error(f"couldn't obtain web: {e}")


class NopCommand:
    """模型的自述类命令（talk / think），不执行任何动作，只回执。"""

    def __init__(self, name: str):
        self.name = name

    async def run(self, args: List[Value]) -> Optional[Value]:
        return f"received {self.name} command"


class ReadFileCommand:
    name = "read"

    def __init__(self, output: Path):
        self.output = output

    async def run(self, args: List[Value]) -> Optional[Value]:
        raw = arg_text(args, 0)
        if raw is None:
            return _error("missing read file path")
        if not raw:
            return _error("empty read file path")
        path = _resolve_path(raw, self.output)
        if path is None:
            return _error(f"invalid read file path: {raw}")
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            return _error(f"couldn't read file: {e}")


class WriteFileCommand:
    name = "write"

    def __init__(self, output: Path):
        self.output = output

    async def run(self, args: List[Value]) -> Optional[Value]:
        raw = arg_text(args, 0)
        if raw is None:
            return _error("missing write file arguments")
        if not raw:
            return _error("empty write file path")
        path = _resolve_path(raw, self.output)
        if path is None:
            return _error(f"invalid write file path: {raw}")
        content = arg_text(args, 1) or ""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return _error(f"couldn't create directory: {e}")
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            return _error(f"couldn't write file: {e}")
        return "write file success"


class DeleteFileCommand:
    name = "delete"

    def __init__(self, output: Path):
        self.output = output

    async def run(self, args: List[Value]) -> Optional[Value]:
        raw = arg_text(args, 0)
        if raw is None:
            return _error("missing delete file path")
        if not raw:
            return _error("empty delete file path")
        path = _resolve_path(raw, self.output)
        if path is None or path == self.output:
            return _error(f"invalid delete file path: {raw}")
        try:
            path.unlink()
        except OSError as e:
            return _error(f"couldn't delete file: {e}")
        return "delete file success"


class ListFilesCommand:
    name = "list"

    def __init__(self, output: Path):
        self.output = output

    async def run(self, args: List[Value]) -> Optional[Value]:
        raw = arg_text(args, 0)
        if raw is None:
            return _error("missing list_files path")
        if not raw:
            return _error("empty list_files path")
        base = _resolve_path(raw, self.output)
        if base is None:
            return _error(f"invalid list_files path: {raw}")
        if not base.is_dir():
            return _error(f"couldn't list files: {raw} is not a directory")
        items: List[str] = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames.sort()
            current = Path(dirpath)
            for d in dirnames:
                items.append((current / d).relative_to(base).as_posix() + "/")
            for f in sorted(filenames):
                items.append((current / f).relative_to(base).as_posix())
        return items


class ExitCommand:
    name = "exit"

    def __init__(self, exit: Optional[ExitFunc]):
        self.exit = exit

    async def run(self, args: List[Value]) -> Optional[Value]:
        if self.exit is not None:
            self.exit()
        return "exit"


def default_commands(
    output: Union[str, Path],
    chat: Optional[ChatStream] = None,
    search: Optional[Search] = None,
    fetch: Optional[FetchText] = None,
    exit: Optional[ExitFunc] = None,
    cancel: Optional[asyncio.Event] = None,
) -> Dict[str, Command]:
    """内置命令注册表。文件类命令都限定在 output 目录之内。"""

    root = Path(output).expanduser().resolve()
    cmds: List[Command] = [
        BashCommand(root, cancel),
        BingCommand(chat or NotAvailable()),
        GoogleCommand(search),
        WebCommand(fetch),
        NopCommand("talk"),
        NopCommand("think"),
        ReadFileCommand(root),
        WriteFileCommand(root),
        DeleteFileCommand(root),
        ListFilesCommand(root),
        ExitCommand(exit),
    ]
    return {cmd.name: cmd for cmd in cmds}
