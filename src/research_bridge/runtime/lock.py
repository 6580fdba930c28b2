"""
Session lock（基于 runtime 目录的独占租约）。

语义：
- 每个 session id 对应一个 `<sid>.lock` JSON 文件，通过 `O_CREAT|O_EXCL` 原子创建；
- owner 在持有期间由后台线程周期性刷新 `heartbeat_at_ms`；
- 存活判定只看 heartbeat 是否在 `stale_after_ms` 内刷新过（不信任 pid：pid 可能被复用）；
- 回收 stale lock、刷新 heartbeat、release、force unlock 都在 `<sid>.lock.guard` 的 flock 临界区内完成，
  保证并发 acquire 时恰好一个成功。
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import secrets
import socket
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from research_bridge.core.errors import SessionLocked
from research_bridge.core.utils import atomic_write_text, now_ms
from research_bridge.runtime.paths import SessionPaths

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockRecord:
    """lock 文件内容（owner 标识 + 存活时间戳）。"""

    session_id: str
    owner_token: str
    owner_pid: int
    host: str
    socket_path: str
    created_at_ms: int
    heartbeat_at_ms: int

    def to_json(self) -> str:
        """序列化为单行 JSON（稳定 key 顺序）。"""

        return json.dumps(asdict(self), ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "LockRecord":
        """从 dict 反序列化（字段缺失/类型错误抛 ValueError）。"""

        try:
            return cls(
                session_id=str(obj["session_id"]),
                owner_token=str(obj["owner_token"]),
                owner_pid=int(obj["owner_pid"]),
                host=str(obj.get("host") or ""),
                socket_path=str(obj.get("socket_path") or ""),
                created_at_ms=int(obj["created_at_ms"]),
                heartbeat_at_ms=int(obj["heartbeat_at_ms"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"invalid lock record: {e}") from e


def read_lock(path: Path) -> Optional[LockRecord]:
    """
    读取 lock 文件。

    返回：
    - LockRecord：解析成功
    - None：文件不存在

    异常：
    - ValueError：文件存在但内容不可解析（例如 owner 在 O_EXCL 创建后、写入前崩溃）
    """

    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"unreadable lock file: {p}") from e
    if not isinstance(obj, dict):
        raise ValueError(f"unreadable lock file: {p}")
    return LockRecord.from_dict(obj)


def inspect_lock(path: Path, *, stale_after_ms: int, now: Optional[int] = None) -> tuple[Optional[LockRecord], bool]:
    """
    存活探测：返回 (record, live)。

    规则：
    - 文件不存在：(None, False)
    - 可解析：heartbeat 距今不超过 stale_after_ms 视为 live
    - 不可解析：以文件 mtime 代替 heartbeat（创建后尚未写完的 lock 在宽限期内仍视为 live）
    """

    t = now_ms() if now is None else int(now)
    try:
        rec = read_lock(path)
    except ValueError:
        try:
            mtime_ms = int(Path(path).stat().st_mtime * 1000)
        except FileNotFoundError:
            return None, False
        return None, (t - mtime_ms) <= int(stale_after_ms)
    if rec is None:
        return None, False
    return rec, (t - rec.heartbeat_at_ms) <= int(stale_after_ms)


@contextlib.contextmanager
def _guard(lock_path: Path) -> Iterator[None]:
    """lock 文件变更的进程间临界区（`<sid>.lock.guard` 上的 flock）。"""

    guard_path = lock_path.with_name(lock_path.name + ".guard")
    fd = os.open(str(guard_path), os.O_CREAT | os.O_RDWR, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        with contextlib.suppress(OSError):
            fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


class SessionLockHandle:
    """
    已持有的 session lock。

    说明：
    - `start_heartbeat()` 启动守护线程周期刷新 heartbeat；
    - 若发现 lock 已被他人回收（token 不匹配），停止刷新并标记 `lost`。
    """

    def __init__(self, *, paths: SessionPaths, record: LockRecord) -> None:
        """
        创建 lock handle（仅由 `acquire_session_lock` 调用）。

        参数：
        - paths：session 路径集合
        - record：已写入磁盘的 lock 内容
        """

        self._paths = paths
        self._record = record
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.lost = False
        self.released = False

    @property
    def record(self) -> LockRecord:
        """当前 lock 内容快照。"""

        with self._state_lock:
            return self._record

    @property
    def path(self) -> Path:
        """lock 文件路径。"""

        return self._paths.lock_path

    def refresh(self) -> bool:
        """
        刷新 heartbeat（原子重写 lock 文件）。

        返回：
        - True：刷新成功
        - False：lock 已丢失（被 force unlock 或被回收）或已 release
        """

        if self.released or self.lost:
            return False
        with _guard(self._paths.lock_path):
            try:
                cur = read_lock(self._paths.lock_path)
            except ValueError:
                cur = None
            with self._state_lock:
                if cur is None or cur.owner_token != self._record.owner_token:
                    self.lost = True
                    logger.warning("session lock lost: session_id=%s", self._record.session_id)
                    return False
                self._record = replace(self._record, heartbeat_at_ms=now_ms())
                atomic_write_text(self._paths.lock_path, self._record.to_json() + "\n")
        return True

    def start_heartbeat(self, interval_ms: int) -> None:
        """启动后台 heartbeat 线程（幂等）。"""

        if self._thread is not None:
            return

        def _run() -> None:
            """heartbeat 线程入口：周期 refresh，直到 stop 或 lock 丢失。"""

            while not self._stop.wait(max(0.01, int(interval_ms) / 1000.0)):
                try:
                    if not self.refresh():
                        return
                except OSError as e:
                    logger.warning("session lock heartbeat failed: session_id=%s err=%s", self._record.session_id, e)

        self._thread = threading.Thread(target=_run, name=f"lock-heartbeat-{self._record.session_id}", daemon=True)
        self._thread.start()

    def stop_heartbeat(self) -> None:
        """停止 heartbeat 线程并等待其退出。"""

        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)
        self._thread = None

    def release(self) -> None:
        """释放 lock（仅当磁盘上的 token 仍属于自己时才删除文件）。"""

        self.stop_heartbeat()
        if self.released:
            return
        with _guard(self._paths.lock_path):
            try:
                cur = read_lock(self._paths.lock_path)
            except ValueError:
                cur = None
            if cur is not None and cur.owner_token == self._record.owner_token:
                self._paths.lock_path.unlink(missing_ok=True)
                logger.info("session lock released: session_id=%s", self._record.session_id)
        self.released = True


def _try_create(paths: SessionPaths, record: LockRecord) -> bool:
    """以 O_EXCL 原子创建 lock 文件；已存在返回 False。"""

    try:
        fd = os.open(str(paths.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(record.to_json() + "\n")
        f.flush()
        os.fsync(f.fileno())
    return True


def acquire_session_lock(*, paths: SessionPaths, session_id: str, stale_after_ms: int) -> SessionLockHandle:
    """
    获取 session 的独占 lock。

    参数：
    - paths：session 路径集合（lock/socket 路径）
    - session_id：session 标识
    - stale_after_ms：heartbeat 超过该时长未刷新即视为 owner 失活，可回收

    异常：
    - SessionLocked：已有 owner 且 heartbeat 探测为 live（调用方不得自动重试）
    """

    paths.runtime_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    t = now_ms()
    record = LockRecord(
        session_id=session_id,
        owner_token=secrets.token_hex(16),
        owner_pid=os.getpid(),
        host=socket.gethostname(),
        socket_path=str(paths.socket_path),
        created_at_ms=t,
        heartbeat_at_ms=t,
    )

    if _try_create(paths, record):
        logger.info("session lock acquired: session_id=%s", session_id)
        return SessionLockHandle(paths=paths, record=record)

    with _guard(paths.lock_path):
        existing, live = inspect_lock(paths.lock_path, stale_after_ms=stale_after_ms)
        if live:
            details: Dict[str, Any] = {"session_id": session_id, "lock_path": str(paths.lock_path)}
            if existing is not None:
                details.update(owner_pid=existing.owner_pid, host=existing.host, heartbeat_at_ms=existing.heartbeat_at_ms)
            raise SessionLocked(f"session {session_id!r} is locked by a live owner", details=details)
        logger.warning(
            "reclaiming stale session lock: session_id=%s previous_owner_pid=%s",
            session_id,
            existing.owner_pid if existing is not None else None,
        )
        paths.lock_path.unlink(missing_ok=True)

    # guard 外重新走 O_EXCL：回收与创建之间若被他人抢先，则对方成为唯一 owner。
    record = replace(record, heartbeat_at_ms=now_ms())
    if _try_create(paths, record):
        logger.info("session lock acquired: session_id=%s", session_id)
        return SessionLockHandle(paths=paths, record=record)
    raise SessionLocked(
        f"session {session_id!r} was acquired concurrently by another owner",
        details={"session_id": session_id, "lock_path": str(paths.lock_path)},
    )


def force_unlock(paths: SessionPaths, *, force: bool, stale_after_ms: int) -> bool:
    """
    人工解锁。

    参数：
    - force：True 时无论 owner 是否 live 都删除；False 时仅删除 stale lock

    返回：
    - bool：是否删除了 lock 文件

    异常：
    - SessionLocked：force=False 且 owner 仍 live
    """

    with _guard(paths.lock_path):
        existing, live = inspect_lock(paths.lock_path, stale_after_ms=stale_after_ms)
        if not paths.lock_path.exists():
            return False
        if live and not force:
            raise SessionLocked(
                "session lock owner is live; pass force=True after verifying the owner is gone",
                details={"lock_path": str(paths.lock_path), "owner_pid": existing.owner_pid if existing else None},
            )
        paths.lock_path.unlink(missing_ok=True)
    with contextlib.suppress(OSError):
        paths.socket_path.unlink(missing_ok=True)
    logger.info("session lock removed: lock_path=%s force=%s", paths.lock_path, force)
    return True
