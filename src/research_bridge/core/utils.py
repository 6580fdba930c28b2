"""共享工具函数（时间戳 / 原子写入）。"""
from __future__ import annotations

import contextlib
import os
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    """返回当前 wall-clock 时间（毫秒）。"""
    return int(time.time() * 1000)


def atomic_write_text(path: Path, text: str) -> None:
    """
    原子写入文本文件（同目录临时文件 + fsync + `os.replace`）。

    参数：
    - path：目标文件路径
    - text：完整文件内容（utf-8）

    说明：
    - 临时文件与目标位于同一目录，保证 rename 在同一文件系统内原子完成；
    - 写入失败时清理临时文件，目标文件保持原样。
    """

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(f".{p.name}.tmp.{secrets.token_hex(6)}")
    try:
        with open(tmp, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, p)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise
