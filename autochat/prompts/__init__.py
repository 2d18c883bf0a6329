"""提示词模板加载工具。

按语言(locale) 从 prompts/<locale> 目录读取模板文本，模板中的 ``{goal}``
会被替换为用户给定的目标。模板本身包含 JSON 示例，所以不用 str.format。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent

AUTO = "auto"
AUTO_NO_BING = "auto_no_bing"
PAIR = "pair"


def load_prompt(name: str, locale: str = "en") -> str:
    """根据模板名称和语言加载提示词文本。"""

    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8")


def render_prompt(name: str, goal: str, locale: str = "en") -> str:
    return load_prompt(name, locale).replace("{goal}", goal).strip()
