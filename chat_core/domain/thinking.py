"""助手回复中思考片段的提取与剥离。

思考片段形如 <think>...</think>，可以出现零次或多次：

- extract_thinking 只取第一对标记中的文本。
- strip_thinking 去掉所有片段，得到展示用文本。

两者都是纯函数；对 strip_thinking 的结果再次调用任一函数不会有变化。
"""

import re
from dataclasses import replace
from functools import lru_cache
from typing import Optional, Pattern

from chat_core.domain.models import Message

DEFAULT_START = "<think>"
DEFAULT_END = "</think>"


@lru_cache(maxsize=8)
def _pattern(start: str, end: str) -> Pattern[str]:
    return re.compile(re.escape(start) + r"(.*?)" + re.escape(end), re.DOTALL)


def extract_thinking(raw: str, start: str = DEFAULT_START, end: str = DEFAULT_END) -> Optional[str]:
    match = _pattern(start, end).search(raw or "")
    if match is None:
        return None
    return match.group(1).strip()


def strip_thinking(raw: str, start: str = DEFAULT_START, end: str = DEFAULT_END) -> str:
    pattern = _pattern(start, end)
    text = raw or ""
    # 剥离后可能拼出新的标记对，直到不再变化
    while True:
        stripped = pattern.sub("", text)
        if stripped == text:
            break
        text = stripped
    return text.strip()


def display_message(message: Message, start: str = DEFAULT_START, end: str = DEFAULT_END) -> Message:
    """生成展示视图：正文去掉思考片段，缺少 thinking 时从正文提取。"""

    if message.role != "assistant":
        return message
    thinking = message.thinking
    if thinking is None:
        thinking = extract_thinking(message.content, start, end)
    return replace(message, content=strip_thinking(message.content, start, end), thinking=thinking)
