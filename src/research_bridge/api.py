"""
高层 API（controller / 工具侧入口）。

controller 接口：
- `open_session` → `execute_code` / `wait_for_result` → `get_quality_report` → `close_session`

工具接口：
- `recompute_quality`：重算 notebook 的门禁结果（写回时先获取 session lock）
- `list_sessions`：列出 runtime 目录中的 session lock 及其存活状态
- `unlock`：人工解锁（owner 仍 live 时必须显式 force）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from research_bridge.bootstrap import load_effective_config
from research_bridge.config.loader import BridgeConfig
from research_bridge.evidence.quality_gates import QualityGateResult
from research_bridge.notebook.document import NotebookDocument
from research_bridge.notebook.index import WorkspaceIndex
from research_bridge.notebook.sync import NotebookSynchronizer, SyncOutcome
from research_bridge.runtime.lock import acquire_session_lock, force_unlock, inspect_lock
from research_bridge.runtime.paths import get_session_paths, resolve_runtime_dir
from research_bridge.runtime.supervisor import (
    BridgeSupervisor,
    ExecutionResult,
    ExecutionStatus,
    Session,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    """runtime 目录中一个 session lock 的快照。"""

    session_id: str
    lock_path: str
    live: bool
    owner_pid: Optional[int] = None
    host: Optional[str] = None
    socket_path: Optional[str] = None
    heartbeat_at_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """转换为 JSON 友好的 dict。"""

        return {
            "session_id": self.session_id,
            "lock_path": self.lock_path,
            "live": self.live,
            "owner_pid": self.owner_pid,
            "host": self.host,
            "socket_path": self.socket_path,
            "heartbeat_at_ms": self.heartbeat_at_ms,
        }


class ResearchSession:
    """一个已打开的研究会话（supervisor + session + notebook 同步器）。"""

    def __init__(self, supervisor: BridgeSupervisor, session: Session, synchronizer: NotebookSynchronizer) -> None:
        """
        参数：
        - supervisor：管理该 session 的 supervisor
        - session：已 acquire 的 session
        - synchronizer：session 对应 notebook 的同步器
        """

        self.supervisor = supervisor
        self.session = session
        self.synchronizer = synchronizer
        self.last_sync: Optional[SyncOutcome] = None
        self._pending_code: Optional[str] = None

    @property
    def id(self) -> str:
        """session id。"""

        return self.session.id

    @property
    def notebook_path(self) -> Path:
        """notebook 文件路径。"""

        return self.synchronizer.document.path

    def _sync(self, result: ExecutionResult, code: str) -> None:
        """非 timeout 结果写入 notebook。"""

        if result.status == ExecutionStatus.TIMEOUT:
            self._pending_code = code
            return
        self._pending_code = None
        self.last_sync = self.synchronizer.record(result, code)

    def execute(self, code: str, timeout_ms: Optional[int] = None) -> ExecutionResult:
        """执行代码并同步到 notebook（见 `BridgeSupervisor.execute`）。"""

        result = self.supervisor.execute(self.session, code, timeout_ms)
        self._sync(result, code)
        return result

    def wait(self, timeout_ms: Optional[int] = None) -> ExecutionResult:
        """等待超时后仍 outstanding 的请求；拿到结果后同步到 notebook。"""

        result = self.supervisor.wait(self.session, timeout_ms)
        self._sync(result, self._pending_code or "")
        return result

    def cancel(self) -> None:
        """强制终止 worker（notebook 历史不受影响）。"""

        self.supervisor.cancel(self.session)
        self._pending_code = None

    def quality_report(self) -> QualityGateResult:
        """对完整输出历史重算门禁结果。"""

        return self.synchronizer.quality_report()

    def close(self) -> None:
        """释放 worker、socket 与 lock（幂等）。"""

        self.supervisor.release(self.session)

    def __enter__(self) -> "ResearchSession":
        """上下文管理：返回自身。"""

        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        """上下文管理：退出时关闭 session。"""

        self.close()


def open_session(
    session_id: str,
    *,
    workspace: Path,
    project_root: Optional[Path] = None,
    interpreter_path: Optional[str] = None,
    slug: Optional[str] = None,
    tags: Optional[list[str]] = None,
    notebook_path: Optional[Path] = None,
    config: Optional[BridgeConfig] = None,
    start: bool = True,
) -> ResearchSession:
    """
    打开研究会话：获取 lock、打开（或新建）notebook、启动 worker。

    参数：
    - session_id：session 标识
    - workspace：工作区目录（notebook 与 index 所在位置，也是配置 overlay 的发现锚点）
    - project_root：worker 的工作目录（缺省为 workspace）
    - interpreter_path：worker 解释器（缺省取配置，再缺省为当前解释器）
    - slug：notebook slug（缺省为 session_id）；notebook 默认位于 `<workspace>/<slug>.ipynb`
    - config：显式配置（缺省按 bootstrap 规则加载）
    - start：是否立即启动 worker（否则首次 execute 时启动）

    异常：
    - SessionLocked / WorkerSpawnFailed / MalformedMetadata（失败时已获取的 lock 会被释放）
    """

    ws = Path(workspace).resolve()
    cfg = config or load_effective_config(workspace_root=ws)
    supervisor = BridgeSupervisor(cfg)
    session = supervisor.acquire(
        session_id,
        workspace=ws,
        project_root=project_root,
        interpreter_path=interpreter_path,
    )
    try:
        nb_slug = slug or session_id
        synchronizer = NotebookSynchronizer.open(
            Path(notebook_path) if notebook_path is not None else ws / f"{nb_slug}.ipynb",
            workspace=ws,
            slug=nb_slug,
            tags=tags,
            config=cfg.notebook,
            index=WorkspaceIndex(ws, filename=cfg.notebook.index_filename),
        )
        if start:
            supervisor.start(session)
    except BaseException:
        supervisor.release(session)
        raise
    logger.info("research session opened: session_id=%s workspace=%s", session_id, ws)
    return ResearchSession(supervisor, session, synchronizer)


def execute_code(session: ResearchSession, code: str, timeout_ms: Optional[int] = None) -> ExecutionResult:
    """执行代码并同步到 notebook。"""

    return session.execute(code, timeout_ms)


def wait_for_result(session: ResearchSession, timeout_ms: Optional[int] = None) -> ExecutionResult:
    """再次等待超时的请求。"""

    return session.wait(timeout_ms)


def get_quality_report(session: ResearchSession) -> QualityGateResult:
    """返回 session 完整历史上的门禁结果。"""

    return session.quality_report()


def close_session(session: ResearchSession) -> None:
    """关闭 session。"""

    session.close()


def _tooling_config(config: Optional[BridgeConfig]) -> BridgeConfig:
    """工具接口的配置：未显式传入时以当前目录为锚点加载。"""

    return config or load_effective_config(workspace_root=Path.cwd())


def list_sessions(*, config: Optional[BridgeConfig] = None) -> list[SessionInfo]:
    """
    列出 runtime 目录中的全部 session lock。

    说明：
    - `live` 基于 heartbeat 探测（与 acquire 使用同一规则）；内容不可解析的 lock 只报告 live 与路径。
    """

    cfg = _tooling_config(config)
    runtime_dir = resolve_runtime_dir(cfg.runtime.runtime_dir)
    out: list[SessionInfo] = []
    for lock_path in sorted(runtime_dir.glob("*.lock")):
        sid = lock_path.name[: -len(".lock")]
        record, live = inspect_lock(lock_path, stale_after_ms=cfg.runtime.lock_stale_after_ms)
        out.append(
            SessionInfo(
                session_id=sid,
                lock_path=str(lock_path),
                live=live,
                owner_pid=record.owner_pid if record else None,
                host=record.host if record else None,
                socket_path=record.socket_path if record else None,
                heartbeat_at_ms=record.heartbeat_at_ms if record else None,
            )
        )
    return out


def unlock(session_id: str, force: bool = False, *, config: Optional[BridgeConfig] = None) -> bool:
    """
    人工解锁 session。

    返回：
    - bool：是否删除了 lock

    异常：
    - SessionLocked：owner 仍 live 且 force=False
    """

    cfg = _tooling_config(config)
    paths = get_session_paths(runtime_dir=resolve_runtime_dir(cfg.runtime.runtime_dir), session_id=session_id)
    return force_unlock(paths, force=force, stale_after_ms=cfg.runtime.lock_stale_after_ms)


def recompute_quality(
    notebook_path: Path,
    *,
    write: bool = False,
    session_id: Optional[str] = None,
    config: Optional[BridgeConfig] = None,
) -> QualityGateResult:
    """
    对 notebook 的完整输出历史重算门禁结果。

    参数：
    - notebook_path：`.ipynb` 路径
    - write：是否把结果写回 notebook metadata
    - session_id：写回前需要获取的 session lock（缺省为 `frontmatter.slug`）

    说明：
    - 只读时不需要 lock；写回是文档修改，必须先成为该 session 的 owner。

    异常：
    - MalformedMetadata：notebook 无法解析
    - SessionLocked：write=True 且 session 仍被 live owner 持有（文件不变）
    """

    cfg = _tooling_config(config)
    p = Path(notebook_path)
    doc = NotebookDocument.load(p)
    if not write:
        return NotebookSynchronizer(doc, config=cfg.notebook).quality_report()

    sid = session_id or doc.frontmatter.slug
    paths = get_session_paths(runtime_dir=resolve_runtime_dir(cfg.runtime.runtime_dir), session_id=sid)
    handle = acquire_session_lock(paths=paths, session_id=sid, stale_after_ms=cfg.runtime.lock_stale_after_ms)
    try:
        # 持锁后重新读取：上一次 owner 可能在 lock 释放前追加了 cell
        doc = NotebookDocument.load(p)
        result = NotebookSynchronizer(doc, config=cfg.notebook).quality_report()
        doc.set_quality(result)
        doc.save()
    finally:
        handle.release()
    logger.info("quality written: notebook=%s session_id=%s score=%s", p, sid, result.score)
    return result
