from __future__ import annotations

from dataclasses import dataclass
import hashlib
import os
from pathlib import Path
import re
import tempfile
from typing import Mapping, Optional

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


@dataclass(frozen=True)
class SessionPaths:
    """单个 session 在 runtime 目录下的关键文件路径集合。"""

    runtime_dir: Path
    lock_path: Path
    socket_path: Path
    worker_log_path: Path


def validate_session_id(session_id: str) -> str:
    """
    校验 session id（作为文件名片段使用，必须拒绝路径分隔符与 `..`）。

    返回：
    - 原样的 session id

    异常：
    - ValueError：不满足 `[A-Za-z0-9][A-Za-z0-9._-]{0,127}`
    """

    sid = str(session_id or "")
    if not _SESSION_ID_RE.match(sid) or ".." in sid:
        raise ValueError(f"invalid session id: {sid!r}")
    return sid


def resolve_runtime_dir(configured: Optional[str] = None, *, env: Optional[Mapping[str, str]] = None) -> Path:
    """
    推导 runtime 目录（短生命周期存储，绝不位于项目目录内）。

    优先级：
    1) 配置项 `runtime.runtime_dir`
    2) `$XDG_RUNTIME_DIR/research-bridge`
    3) `<tempdir>/research-bridge-<uid>`

    说明：
    - 目录以 0700 创建（lock 与 socket 只对当前用户可见）。
    """

    e = env if env is not None else os.environ
    if configured:
        base = Path(configured).expanduser()
    elif str(e.get("XDG_RUNTIME_DIR") or "").strip():
        base = Path(str(e["XDG_RUNTIME_DIR"]).strip()) / "research-bridge"
    else:
        uid = os.getuid() if hasattr(os, "getuid") else 0
        base = Path(tempfile.gettempdir()) / f"research-bridge-{uid}"
    base = base.resolve()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    return base


def get_session_paths(*, runtime_dir: Path, session_id: str) -> SessionPaths:
    """
    获取 session 相关路径（均位于 runtime_dir 下）。

    参数：
    - runtime_dir：runtime 目录（见 `resolve_runtime_dir`）
    - session_id：session 标识
    """

    sid = validate_session_id(session_id)
    rd = Path(runtime_dir).resolve()
    lock_path = rd / f"{sid}.lock"
    socket_path = rd / f"{sid}.sock"
    # macOS/部分 Unix 的 AF_UNIX 路径长度有上限（常见 ~104 bytes）。
    # runtime_dir 较深或 session id 较长时降级为 hash 命名的短路径（hash 覆盖 runtime_dir + sid）。
    if len(str(socket_path)) > 90:
        h = hashlib.sha256(str(rd / sid).encode("utf-8", errors="replace")).hexdigest()[:16]
        socket_path = rd / f"s_{h}.sock"
        if len(str(socket_path)) > 90:
            socket_path = Path(tempfile.gettempdir()) / f"rb_{h}.sock"
    return SessionPaths(
        runtime_dir=rd,
        lock_path=lock_path,
        socket_path=socket_path,
        worker_log_path=rd / f"{sid}.worker.log",
    )
