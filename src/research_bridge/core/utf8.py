"""
stdio 编码兜底（CLI 入口用）。

说明：
- `C` locale 或部分 conda 环境下 stdout/stderr 可能是 ASCII；
- CLI 的 help 文本含中文，JSON 输出可能含用户代码产生的非 ASCII 内容；
- 入口应在 argparse 之前调用。
"""

from __future__ import annotations

import sys


def ensure_utf8_stdio() -> None:
    """
    best-effort 将 stdout/stderr reconfigure 为 UTF-8（errors="replace"）。

    说明：
    - 流对象不支持 `reconfigure()` 或 reconfigure 失败时保持原样，不阻断启动。
    """

    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if not callable(reconfigure):
            continue
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (ValueError, OSError):
            continue
