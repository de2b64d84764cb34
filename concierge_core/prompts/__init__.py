"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 system prompt 文本，
作为每一轮模型请求的 system 字段。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent

_PROMPT_FILES = {
    "concierge": "concierge_system.md",
}


def load_system_prompt(agent_type: str = "concierge", locale: str = "en") -> str:
    """根据 Agent 类型和语言加载系统提示词文本。

    目前 agent_type 仅支持 "concierge"，未知类型抛出 KeyError。
    """

    fname = PROMPTS_DIR / locale / _PROMPT_FILES[agent_type]
    return fname.read_text(encoding="utf-8").strip()
