"""从模型回复中提取命令。

回复通常是夹杂说明文字的 JSON，这里取第一个 ``[`` 到最后一个 ``]``
之间的内容尝试整体解析；失败时逐个扫描其中括号配平的 ``{...}`` 对象，
能解析的保留，不能解析的跳过（尽力而为）。
"""

import json
from typing import Any, Dict, List

from autochat.domain.exceptions import ParseError
from autochat.tools.definitions import CommandRequest

ALIASES = {
    "write_file": "write",
    "read_file": "read",
    "delete_file": "delete",
    "list_files": "list",
}


def normalize_name(name: str) -> str:
    name = name.strip().lower().replace("-", "_").replace(" ", "_")
    return ALIASES.get(name, name)


def scan_objects(text: str) -> List[str]:
    """返回 text 中所有顶层、括号配平的 ``{...}`` 片段（忽略字符串内部的括号）。"""

    objects: List[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            # 对象外的引号不影响配平
            if depth > 0:
                in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                objects.append(text[start : i + 1])
    return objects


def _load_array(candidate: str) -> List[Dict[str, Any]]:
    data = json.loads(candidate)
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise json.JSONDecodeError("expected an array of objects", candidate, 0)
    return data


def parse(text: str) -> List[CommandRequest]:
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end < start:
        raise ParseError(code="PARSE_ERROR", message=f"no json array found: {text[:500]}")
    candidate = text[start : end + 1]

    try:
        objects = _load_array(candidate)
    except json.JSONDecodeError as e:
        error = f"couldn't unmarshal json array ({candidate[:500]}): {e}"
        objects = []
        for fragment in scan_objects(candidate):
            try:
                obj = json.loads(fragment)
            except json.JSONDecodeError:
                continue
            if isinstance(obj, dict):
                objects.append(obj)
        if not objects:
            raise ParseError(code="PARSE_ERROR", message=error)

    requests: List[CommandRequest] = []
    for obj in objects:
        for name, value in obj.items():
            args = value if isinstance(value, list) else [value]
            requests.append(CommandRequest(name=name, args=args))
    return requests
