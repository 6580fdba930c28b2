"""
结构化证据 marker 解析。

语法（行首）：
- `[TYPE]` 或 `[TYPE:subtype]`，其后为自由文本内容；
- TYPE 以字母开头，只含字母与下划线，匹配时统一转为大写；
- subtype 原样保留（质量门禁对其做前缀/子串判断）。

说明：
- 解析是纯函数：同一文本永远得到同一 marker 序列；不匹配的方括号语法只是“不是 marker”，不会报错；
- 行号从 1 开始，针对传入的整段文本计算（session 级别的行号见 `join_outputs`）。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import ClassVar, FrozenSet, Iterable, Optional

_MARKER_RE = re.compile(r"^\[([A-Za-z][A-Za-z_]*)(?::([^\]]+))?\]\s*(.*)$")

MARKER_TYPES: FrozenSet[str] = frozenset(
    {
        "OBJECTIVE",
        "HYPOTHESIS",
        "DATA",
        "EXPERIMENT",
        "OBSERVATION",
        "ANALYSIS",
        "PATTERN",
        "METRIC",
        "STAT",
        "FINDING",
        "LIMITATION",
        "CONCLUSION",
        "DECISION",
        "CHECKPOINT",
        "ERROR",
        "INFO",
    }
)


@dataclass(frozen=True)
class Marker:
    """一条证据 marker。"""

    type: str
    subtype: Optional[str]
    line_number: int
    content: str
    raw_line: str

    known: ClassVar[FrozenSet[str]] = MARKER_TYPES

    @property
    def is_known(self) -> bool:
        """TYPE 是否属于内置词表（未知类型仍然会被解析出来）。"""

        return self.type in MARKER_TYPES

    def to_dict(self) -> dict:
        """转换为 JSON 友好的 dict（用于 notebook cell metadata）。"""

        return {
            "type": self.type,
            "subtype": self.subtype,
            "line_number": self.line_number,
            "content": self.content,
        }


def parse_marker_line(line: str, line_number: int) -> Optional[Marker]:
    """
    解析单行；不是 marker 时返回 None。

    参数：
    - line：单行文本（不含换行符）
    - line_number：该行的 1-based 行号
    """

    raw = line.rstrip("\r")
    m = _MARKER_RE.match(raw)
    if m is None:
        return None
    return Marker(
        type=m.group(1).upper(),
        subtype=m.group(2),
        line_number=int(line_number),
        content=m.group(3).strip(),
        raw_line=raw,
    )


def parse_markers(text: str) -> list[Marker]:
    """
    从文本中提取全部 marker（按行号升序）。

    参数：
    - text：任意多行文本（通常是一段或整个 session 的 stdout）

    返回：
    - list[Marker]：每条 marker 携带它在 `text` 中的 1-based 行号
    """

    out: list[Marker] = []
    for i, line in enumerate(str(text or "").split("\n"), start=1):
        marker = parse_marker_line(line, i)
        if marker is not None:
            out.append(marker)
    return out


def markers_by_type(markers: Iterable[Marker], marker_type: str) -> list[Marker]:
    """按 TYPE 过滤（大小写不敏感），保持原顺序。"""

    t = str(marker_type).upper()
    return [m for m in markers if m.type == t]


def join_outputs(chunks: Iterable[str]) -> str:
    """
    把多次执行的 stdout 拼接为 session 级输出流。

    说明：
    - 每段都以换行结尾后再拼接，保证某段最后一行不会与下一段首行粘连；
    - 因此 marker 行号在整个 session 历史上单调递增。
    """

    parts: list[str] = []
    for chunk in chunks:
        s = str(chunk or "")
        if not s:
            continue
        parts.append(s if s.endswith("\n") else s + "\n")
    return "".join(parts)
