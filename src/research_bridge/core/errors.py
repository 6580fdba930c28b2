"""
Bridge 错误分类（异常类型）。

说明：
- 所有对外异常都继承 `BridgeError`，携带稳定的英文 `code/message/details`；
- 质量门禁的 violations 属于“数据”，不会以异常形式抛出；
- CLI 通过 `to_issue()` 把异常转换为可 JSON 序列化的问题对象。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class BridgeIssue:
    """结构化问题对象（可用于 CLI JSON 输出）。"""

    code: str
    message: str
    details: Dict[str, Any]


class BridgeError(Exception):
    """Bridge 结构化错误基类（英文 `code/message/details`）。"""

    code = "BRIDGE_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Dict[str, Any] | None = None) -> None:
        """创建 bridge 错误。

        参数：
        - `message`：英文错误消息
        - `code`：稳定错误码（缺省使用子类的 `code` 类属性）
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code or type(self).code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> BridgeIssue:
        """把异常转换为可序列化问题对象。"""

        return BridgeIssue(code=self.code, message=self.message, details=dict(self.details))


class SessionLocked(BridgeError):
    """session lock 被一个仍然存活的 owner 持有（需要人工处理，不自动重试）。"""

    code = "SESSION_LOCKED"


class WorkerSpawnFailed(BridgeError):
    """worker 启动失败（解释器路径无效 / 握手前退出 / 握手超时）。"""

    code = "WORKER_SPAWN_FAILED"


class RequestInFlight(BridgeError):
    """同一 session 已有未完成请求（调用方误用；不产生任何副作用）。"""

    code = "REQUEST_IN_FLIGHT"


class ExecutionTimeout(BridgeError):
    """执行超时（可恢复：worker 可能仍在计算，由调用方决定 wait 或 cancel）。"""

    code = "EXECUTION_TIMEOUT"


class WorkerDied(BridgeError):
    """worker 在执行中退出（下一次调用会透明重启；失败的调用不会被重试）。"""

    code = "WORKER_DIED"


class SessionNotStarted(BridgeError):
    """session 尚未持有 lock 或已 release。"""

    code = "SESSION_NOT_STARTED"


class ProtocolError(BridgeError):
    """传输层帧格式错误（非法 JSON / 超出帧大小上限 / 未知 kind）。"""

    code = "PROTOCOL_ERROR"


class MalformedMetadata(BridgeError):
    """已有 notebook 的首个 metadata cell 无法解析（需要显式迁移，绝不静默覆盖）。"""

    code = "MALFORMED_METADATA"


class IndexSentinelError(BridgeError):
    """workspace index 文件中的 BEGIN/END sentinel 不成对或顺序错误。"""

    code = "INDEX_SENTINEL_ERROR"


class IndexUnreadable(BridgeError):
    """workspace index 文件无法按 utf-8 解码（文件保持不变，需要人工修复）。"""

    code = "INDEX_UNREADABLE"
