"""实时后端的会话凭据。

Session 由外部的“浏览器会话捕获”工具生成（cookie、TLS 指纹、UA 等），
这里只负责消费：每次成功建立会话后用最新 cookie 更新并写回文件。
"""

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping


@dataclass
class Session:
    ja3: str = ""
    user_agent: str = ""
    language: str = ""
    cookie: str = ""
    sec_ms_gec: str = ""
    sec_ms_gec_version: str = ""
    x_client_data: str = ""
    x_ms_user_agent: str = ""

    def to_dict(self) -> Dict[str, str]:
        """序列化为 YAML 友好的 dict，key 使用连字符（user-agent 等）。"""

        return {k.replace("_", "-"): v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Session":
        known = {f.name for f in fields(cls)}
        values: Dict[str, str] = {}
        for key, value in (data or {}).items():
            name = str(key).strip().lower().replace("-", "_")
            if name in known and value is not None:
                values[name] = str(value)
        return cls(**values)
