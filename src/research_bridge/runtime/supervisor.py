"""
Bridge Supervisor（session / worker 生命周期）。

职责：
- acquire：获取 session lock（heartbeat 探测 owner 存活；stale lock 回收）；
- start：绑定 session socket，拉起 worker 并完成 ready 握手；
- execute / wait：单 outstanding request 的同步执行（超时不杀 worker）；
- cancel / restart / release：终止、重启、优雅关闭。

约束：
- 每个 session 同时最多一个 worker 进程与一个 socket endpoint；
- worker 在执行中退出时返回 `workerDied`，下一次 execute 透明重启，但绝不自动重试失败的调用。
"""

from __future__ import annotations

import contextlib
import logging
import os
import select
import shutil
import signal
import socket
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from research_bridge.config.loader import BridgeConfig
from research_bridge.core.errors import (
    ExecutionTimeout,
    ProtocolError,
    RequestInFlight,
    SessionNotStarted,
    WorkerDied,
    WorkerSpawnFailed,
)
from research_bridge.core.utils import now_ms, now_rfc3339
from research_bridge.runtime.channel import Channel
from research_bridge.runtime.lock import SessionLockHandle, acquire_session_lock
from research_bridge.runtime.paths import SessionPaths, get_session_paths, resolve_runtime_dir
from research_bridge.runtime.protocol import ChannelClosed

logger = logging.getLogger(__name__)

_WORKER_MODULE = "research_bridge.runtime.worker"


class ExecutionStatus(str, Enum):
    """单次执行的结果状态。"""

    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"
    WORKER_DIED = "workerDied"


@dataclass(frozen=True)
class ExecutionRequest:
    """已发送的执行请求（发送后不可变）。"""

    sequence_id: int
    code: str
    timeout_ms: int


@dataclass(frozen=True)
class ExecutionResult:
    """
    单次执行结果。

    字段：
    - exception_trace：用户代码抛出的异常 traceback（status=error 时存在）
    - truncated：stdout/stderr 超出 `execution.max_output_bytes`，已做尾部保留截断
    """

    sequence_id: int
    stdout: str
    stderr: str
    exception_trace: Optional[str]
    duration_ms: int
    status: ExecutionStatus
    truncated: bool = False

    def raise_for_status(self) -> "ExecutionResult":
        """
        将非正常结束的状态转换为异常。

        说明：
        - ok / error 不抛出（用户代码异常是数据，不是 bridge 错误）

        异常：
        - ExecutionTimeout：status=timeout
        - WorkerDied：status=workerDied
        """

        details = {"sequence_id": self.sequence_id, "duration_ms": self.duration_ms}
        if self.status == ExecutionStatus.TIMEOUT:
            raise ExecutionTimeout("execution timed out; the worker may still be computing", details=details)
        if self.status == ExecutionStatus.WORKER_DIED:
            raise WorkerDied("worker exited during execution", details=details)
        return self


@dataclass
class WorkerHandle:
    """
    一个 worker 进程实例（进程 + 监听 socket + 已建立的通道）。

    字段：
    - log_offset：启动时 `<sid>.worker.log` 的长度（之后的内容属于本实例）
    """

    proc: subprocess.Popen
    listener: socket.socket
    channel: Channel
    pid: int
    python: str
    started_at_ms: int
    log_offset: int = 0

    def alive(self) -> bool:
        """进程是否仍在运行。"""

        return self.proc.poll() is None


@dataclass
class Session:
    """
    被当前 supervisor 独占的研究会话。

    说明：
    - `lock` 是所有权的持久证明；release 之后 session 不可再用于执行；
    - `inflight` 为超时后仍未取回结果的请求（见 `BridgeSupervisor.wait`）。
    """

    id: str
    workspace: Path
    project_root: Path
    interpreter_path: str
    created_at: str
    paths: SessionPaths
    lock: SessionLockHandle
    worker: Optional[WorkerHandle] = None
    inflight: Optional[ExecutionRequest] = None
    _busy: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _state: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


def _package_root() -> Path:
    """返回 `research_bridge` 包所在目录（用于 worker 的 PYTHONPATH）。"""

    return Path(__file__).resolve().parents[2]


def _resolve_interpreter(interpreter: str) -> Optional[str]:
    """解析解释器路径：绝对/相对路径要求可执行；裸命令名经 PATH 查找。"""

    s = str(interpreter or "").strip()
    if not s:
        return None
    if os.sep in s:
        p = Path(s).expanduser()
        if p.is_file() and os.access(str(p), os.X_OK):
            return str(p)
        return None
    return shutil.which(s)


def _read_tail(path: Path, *, offset: int = 0, max_bytes: int = 2000) -> str:
    """
    读取日志尾部（用于错误信息；读取失败返回空串）。

    参数：
    - offset：只读取该字节偏移之后的内容（当前 worker 启动时的日志长度）
    """

    try:
        with open(path, "rb") as f:
            f.seek(max(0, int(offset)))
            b = f.read()
    except OSError:
        return ""
    return b[-max_bytes:].decode("utf-8", errors="replace")


def _kill_process_group(proc: subprocess.Popen, *, grace_sec: float) -> None:
    """
    终止 worker 进程组（SIGTERM → 宽限期 → SIGKILL），并回收子进程。

    参数：
    - proc：worker 进程（start_new_session=True，pid 即 pgid）
    - grace_sec：SIGTERM 之后等待退出的秒数
    """

    if proc.poll() is None:
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except OSError:
            with contextlib.suppress(OSError):
                proc.terminate()
        try:
            proc.wait(timeout=max(0.0, grace_sec))
        except subprocess.TimeoutExpired:
            pass
    # 进程已退出时仍清理同组的子孙进程
    with contextlib.suppress(OSError):
        os.killpg(proc.pid, signal.SIGKILL)
    if proc.poll() is None:
        with contextlib.suppress(OSError):
            proc.kill()
        with contextlib.suppress(subprocess.TimeoutExpired):
            proc.wait(timeout=5.0)


class BridgeSupervisor:
    """
    管理一个或多个 session 的 worker 生命周期。

    说明：
    - 调用对调用方是同步的；并发只存在于不同 session 之间；
    - 同一 session 上第二个并发 execute 立即抛 `RequestInFlight`，不产生副作用。
    """

    def __init__(self, config: BridgeConfig) -> None:
        """
        参数：
        - config：已校验的配置（见 `research_bridge.bootstrap.load_effective_config`）
        """

        self._config = config
        self._runtime_dir = resolve_runtime_dir(config.runtime.runtime_dir)

    @property
    def config(self) -> BridgeConfig:
        """当前配置。"""

        return self._config

    @property
    def runtime_dir(self) -> Path:
        """runtime 目录（lock 与 socket 所在位置）。"""

        return self._runtime_dir

    # ---- lock ----

    def acquire(
        self,
        session_id: str,
        *,
        workspace: Path,
        project_root: Optional[Path] = None,
        interpreter_path: Optional[str] = None,
    ) -> Session:
        """
        获取 session 的独占所有权。

        参数：
        - session_id：session 标识（作为 runtime 目录下的文件名片段）
        - workspace：notebook 与 index 所在的工作区目录
        - project_root：worker 的工作目录（缺省为 workspace）
        - interpreter_path：worker 使用的解释器（缺省取配置 `worker.interpreter`，再缺省为当前解释器）

        异常：
        - SessionLocked：已有 live owner
        - ValueError：session id 非法
        """

        paths = get_session_paths(runtime_dir=self._runtime_dir, session_id=session_id)
        handle = acquire_session_lock(
            paths=paths,
            session_id=session_id,
            stale_after_ms=self._config.runtime.lock_stale_after_ms,
        )
        handle.start_heartbeat(self._config.runtime.lock_heartbeat_interval_ms)
        ws = Path(workspace).resolve()
        return Session(
            id=session_id,
            workspace=ws,
            project_root=Path(project_root).resolve() if project_root is not None else ws,
            interpreter_path=str(interpreter_path or self._config.worker.interpreter or sys.executable),
            created_at=now_rfc3339(),
            paths=paths,
            lock=handle,
        )

    def _require_lock(self, session: Session) -> None:
        """确认 session 仍持有 lock（release 或被强制解锁后不得再使用传输层）。"""

        if session.lock.released:
            raise SessionNotStarted(f"session {session.id!r} has been released", details={"session_id": session.id})
        if session.lock.lost:
            raise SessionNotStarted(
                f"session {session.id!r} lost its lock (force-unlocked or reclaimed)",
                details={"session_id": session.id},
            )

    # ---- worker lifecycle ----

    def _bind_listener(self, paths: SessionPaths) -> socket.socket:
        """绑定 session socket（移除残留的旧 socket 文件）。"""

        with contextlib.suppress(FileNotFoundError):
            paths.socket_path.unlink()
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(str(paths.socket_path))
            with contextlib.suppress(OSError):
                os.chmod(paths.socket_path, 0o600)
            listener.listen(1)
        except OSError:
            listener.close()
            raise
        return listener

    def _worker_env(self) -> Dict[str, str]:
        """构造 worker 环境变量（PYTHONPATH 前置本包所在目录，保证 `-m` 可导入）。"""

        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in self._config.worker.env.items()})
        root = str(_package_root())
        existing = env.get("PYTHONPATH") or ""
        env["PYTHONPATH"] = root + (os.pathsep + existing if existing else "")
        env["PYTHONUNBUFFERED"] = "1"
        return env

    def _accept(self, listener: socket.socket, proc: subprocess.Popen, deadline: float) -> Optional[socket.socket]:
        """等待 worker 回连；进程提前退出或超时返回 None。"""

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or proc.poll() is not None:
                return None
            rlist, _, _ = select.select([listener], [], [], min(0.1, remaining))
            if rlist:
                conn, _ = listener.accept()
                return conn

    def start(self, session: Session) -> WorkerHandle:
        """
        启动 worker 并完成 ready 握手（已有存活 worker 时直接返回）。

        异常：
        - SessionNotStarted：session 已 release 或 lock 丢失
        - WorkerSpawnFailed：解释器无效 / 握手前退出 / 握手超时
        """

        self._require_lock(session)
        with session._state:
            if session.worker is not None and session.worker.alive() and not session.worker.channel.closed:
                return session.worker
            if session.worker is not None:
                self._discard_worker(session, reason="stale worker before start")

            interpreter = _resolve_interpreter(session.interpreter_path)
            details: Dict[str, Any] = {"session_id": session.id, "interpreter": session.interpreter_path}
            if interpreter is None:
                raise WorkerSpawnFailed("interpreter not found or not executable", details=details)
            if not session.project_root.is_dir():
                raise WorkerSpawnFailed(
                    "project root does not exist",
                    details={**details, "project_root": str(session.project_root)},
                )

            listener = self._bind_listener(session.paths)
            log_path = session.paths.worker_log_path
            try:
                log_offset = log_path.stat().st_size
            except FileNotFoundError:
                log_offset = 0
            argv = [
                interpreter,
                "-u",
                "-m",
                _WORKER_MODULE,
                "--connect",
                str(session.paths.socket_path),
                "--max-frame-bytes",
                str(self._config.transport.max_frame_bytes),
            ]
            try:
                with open(log_path, "ab") as log_f:
                    proc = subprocess.Popen(  # noqa: S603
                        argv,
                        cwd=str(session.project_root),
                        env=self._worker_env(),
                        stdin=subprocess.DEVNULL,
                        stdout=log_f,
                        stderr=log_f,
                        start_new_session=True,
                        close_fds=True,
                    )
            except OSError as e:
                listener.close()
                with contextlib.suppress(FileNotFoundError):
                    session.paths.socket_path.unlink()
                raise WorkerSpawnFailed(f"failed to spawn worker: {e}", details=details) from e

            deadline = time.monotonic() + self._config.worker.handshake_timeout_ms / 1000.0
            conn = self._accept(listener, proc, deadline)
            handshake: Optional[Dict[str, Any]] = None
            channel: Optional[Channel] = None
            if conn is not None:
                channel = Channel(conn, max_frame_bytes=self._config.transport.max_frame_bytes)
                try:
                    handshake = channel.await_handshake(max(0.0, deadline - time.monotonic()))
                except (ChannelClosed, ProtocolError):
                    handshake = None

            if channel is None or handshake is None:
                exited = proc.poll() is not None
                if channel is not None:
                    channel.close()
                _kill_process_group(proc, grace_sec=0.2)
                listener.close()
                with contextlib.suppress(FileNotFoundError):
                    session.paths.socket_path.unlink()
                tail = _read_tail(log_path, offset=log_offset).strip()
                msg = "worker exited before handshake" if exited else "worker handshake timed out"
                if tail:
                    msg += f"; worker.log.tail={tail!r}"
                raise WorkerSpawnFailed(msg, details={**details, "returncode": proc.returncode})

            worker = WorkerHandle(
                proc=proc,
                listener=listener,
                channel=channel,
                pid=int(handshake.get("pid") or proc.pid),
                python=str(handshake.get("python") or ""),
                started_at_ms=now_ms(),
                log_offset=log_offset,
            )
            session.worker = worker
            session.inflight = None
            logger.info(
                "worker started: session_id=%s pid=%s python=%s",
                session.id,
                worker.pid,
                worker.python,
            )
            return worker

    def _discard_worker(self, session: Session, *, reason: str, grace_sec: float = 0.5) -> None:
        """终止并丢弃当前 worker（关闭通道与监听 socket，删除 socket 文件）。"""

        with session._state:
            worker = session.worker
            session.worker = None
            session.inflight = None
        if worker is None:
            return
        worker.channel.abandon_outstanding()
        worker.channel.close()
        _kill_process_group(worker.proc, grace_sec=grace_sec)
        worker.listener.close()
        with contextlib.suppress(FileNotFoundError):
            session.paths.socket_path.unlink()
        logger.info(
            "worker terminated: session_id=%s pid=%s reason=%s returncode=%s",
            session.id,
            worker.pid,
            reason,
            worker.proc.returncode,
        )

    def _ensure_worker(self, session: Session) -> WorkerHandle:
        """返回可用 worker；上一个 worker 已退出时透明重启（序号从 1 重新开始）。"""

        worker = session.worker
        if worker is not None and worker.alive() and not worker.channel.closed:
            return worker
        if worker is not None:
            logger.info("respawning worker: session_id=%s previous_pid=%s", session.id, worker.pid)
        return self.start(session)

    # ---- execution ----

    def _worker_died(self, session: Session, request: ExecutionRequest, started: float) -> ExecutionResult:
        """构造 workerDied 结果并丢弃已退出的 worker（下一次 execute 会重启）。"""

        worker = session.worker
        returncode = worker.proc.poll() if worker is not None else None
        log_offset = worker.log_offset if worker is not None else 0
        logger.warning(
            "worker died during execution: session_id=%s seq=%s returncode=%s",
            session.id,
            request.sequence_id,
            returncode,
        )
        self._discard_worker(session, reason="died", grace_sec=0.0)
        return ExecutionResult(
            sequence_id=request.sequence_id,
            stdout="",
            stderr=_read_tail(session.paths.worker_log_path, offset=log_offset),
            exception_trace=None,
            duration_ms=int((time.monotonic() - started) * 1000),
            status=ExecutionStatus.WORKER_DIED,
        )

    def _collect(self, session: Session, timeout_ms: int) -> ExecutionResult:
        """等待 outstanding 请求的 response（超时保留 outstanding）。"""

        worker = session.worker
        request = session.inflight
        assert worker is not None and request is not None
        started = time.monotonic()
        try:
            payload = worker.channel.await_response(timeout_ms / 1000.0)
        except ChannelClosed:
            return self._worker_died(session, request, started)
        except ProtocolError:
            self._discard_worker(session, reason="protocol error")
            raise

        if payload is None:
            if not worker.alive():
                return self._worker_died(session, request, started)
            return ExecutionResult(
                sequence_id=request.sequence_id,
                stdout="",
                stderr="",
                exception_trace=None,
                duration_ms=int((time.monotonic() - started) * 1000),
                status=ExecutionStatus.TIMEOUT,
            )

        session.inflight = None
        status = ExecutionStatus.ERROR if payload.get("status") == "error" else ExecutionStatus.OK
        trace = payload.get("exception_trace")
        return ExecutionResult(
            sequence_id=request.sequence_id,
            stdout=str(payload.get("stdout") or ""),
            stderr=str(payload.get("stderr") or ""),
            exception_trace=str(trace) if trace is not None else None,
            duration_ms=int(payload.get("duration_ms") or 0),
            status=status,
            truncated=bool(payload.get("truncated")),
        )

    @contextlib.contextmanager
    def _exclusive(self, session: Session):
        """同一 session 的互斥区：已被其它调用占用时立即抛 RequestInFlight。"""

        if not session._busy.acquire(blocking=False):
            raise RequestInFlight(
                "another call is in progress on this session",
                details={"session_id": session.id},
            )
        try:
            yield
        finally:
            session._busy.release()

    def _reject_if_outstanding(self, session: Session) -> None:
        """已有 outstanding 请求时拒绝新请求。"""

        if session.inflight is not None:
            raise RequestInFlight(
                "a request is already outstanding on this session; wait() for it or cancel()",
                details={"session_id": session.id, "outstanding_seq": session.inflight.sequence_id},
            )

    def execute(self, session: Session, code: str, timeout_ms: Optional[int] = None) -> ExecutionResult:
        """
        执行代码并阻塞直到得到结果或超时。

        参数：
        - code：Python 源码（最后一个表达式的值会按 REPL 习惯打印）
        - timeout_ms：超时（缺省取 `execution.default_timeout_ms`）

        返回：
        - ExecutionResult；超时返回 status=timeout（worker 不会被终止，请求保持 outstanding）

        异常：
        - RequestInFlight：已有 outstanding 请求（无副作用）
        - SessionNotStarted：session 已 release 或 lock 丢失
        - WorkerSpawnFailed：需要重启 worker 但启动失败
        """

        self._require_lock(session)
        with self._exclusive(session):
            self._reject_if_outstanding(session)
            t = int(timeout_ms if timeout_ms is not None else self._config.execution.default_timeout_ms)
            worker = self._ensure_worker(session)
            request = ExecutionRequest(sequence_id=worker.channel.next_seq, code=code, timeout_ms=t)
            started = time.monotonic()
            try:
                worker.channel.send_request(
                    {
                        "op": "execute",
                        "code": code,
                        "max_output_bytes": self._config.execution.max_output_bytes,
                    }
                )
            except ChannelClosed:
                session.inflight = request
                return self._worker_died(session, request, started)
            session.inflight = request
            logger.debug("execute sent: session_id=%s seq=%s timeout_ms=%s", session.id, request.sequence_id, t)
            return self._collect(session, t)

    def wait(self, session: Session, timeout_ms: Optional[int] = None) -> ExecutionResult:
        """
        再次等待超时后仍 outstanding 的请求。

        异常：
        - ProtocolError：当前没有 outstanding 请求
        """

        self._require_lock(session)
        with self._exclusive(session):
            if session.inflight is None or session.worker is None:
                raise ProtocolError("no outstanding request to wait for", details={"session_id": session.id})
            t = int(timeout_ms if timeout_ms is not None else session.inflight.timeout_ms)
            return self._collect(session, t)

    def cancel(self, session: Session) -> None:
        """强制终止 worker（解释器状态丢失；下一次 execute 会重启）。"""

        self._discard_worker(session, reason="cancelled", grace_sec=0.2)

    def restart(self, session: Session) -> WorkerHandle:
        """终止当前 worker 并启动一个全新的 worker。"""

        self._require_lock(session)
        self._discard_worker(session, reason="restart", grace_sec=0.2)
        return self.start(session)

    def _simple_request(self, session: Session, op: str) -> Dict[str, Any]:
        """发送一个非执行类请求（reset/state）并等待 response。"""

        self._require_lock(session)
        with self._exclusive(session):
            self._reject_if_outstanding(session)
            worker = self._ensure_worker(session)
            timeout_sec = self._config.worker.handshake_timeout_ms / 1000.0
            try:
                worker.channel.send_request({"op": op})
                payload = worker.channel.await_response(timeout_sec)
            except ChannelClosed as e:
                self._discard_worker(session, reason="died", grace_sec=0.0)
                raise WorkerDied(f"worker exited during {op!r}", details={"session_id": session.id}) from e
            if payload is None:
                # 非执行类请求不应超时；worker 状态未知，直接丢弃
                self._discard_worker(session, reason=f"{op} timed out")
                raise WorkerDied(f"worker did not answer {op!r}", details={"session_id": session.id})
            return payload

    def reset(self, session: Session) -> None:
        """清空 worker 内的用户绑定（进程保持运行）。"""

        self._simple_request(session, "reset")

    def state(self, session: Session) -> Dict[str, Any]:
        """
        查询 worker 状态。

        返回：
        - dict：`bindings`（用户定义的名字，已排序）与 `cells`（已执行次数）
        """

        payload = self._simple_request(session, "state")
        return {"bindings": list(payload.get("bindings") or []), "cells": int(payload.get("cells") or 0)}

    def heartbeat(self, session: Session) -> bool:
        """
        通道往返 heartbeat。

        说明：
        - 可在超时后的 outstanding 请求期间调用；期间到达的 response 会暂存给 `wait`。

        返回：
        - bool：worker 是否在 `transport.heartbeat_timeout_ms` 内回应
        """

        self._require_lock(session)
        with self._exclusive(session):
            worker = session.worker
            if worker is None or not worker.alive():
                return False
            try:
                return worker.channel.heartbeat(self._config.transport.heartbeat_timeout_ms / 1000.0)
            except ChannelClosed:
                return False

    # ---- release ----

    def release(self, session: Session) -> None:
        """
        优雅关闭：shutdown 请求 → 有界等待 → 强制终止进程组；删除 socket 文件并释放 lock（幂等）。
        """

        grace_sec = self._config.worker.shutdown_grace_ms / 1000.0
        with session._state:
            worker = session.worker
            if worker is not None and worker.alive() and session.inflight is None:
                with contextlib.suppress(ChannelClosed, ProtocolError, RequestInFlight):
                    worker.channel.send_request({"op": "shutdown"})
                    worker.channel.await_response(grace_sec)
                with contextlib.suppress(subprocess.TimeoutExpired):
                    worker.proc.wait(timeout=grace_sec)
            self._discard_worker(session, reason="release", grace_sec=grace_sec)
        with contextlib.suppress(FileNotFoundError):
            session.paths.socket_path.unlink()
        session.lock.release()
        logger.info("session released: session_id=%s", session.id)
