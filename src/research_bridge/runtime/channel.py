"""
Transport Channel（supervisor 侧）。

语义：
- 执行序号由 supervisor 分配，在同一个 worker 实例内严格递增（从 1 开始）；
- 同一时刻只允许一个 outstanding request；response 只有在 seq 与之匹配时才被接受，
  其余（错位 / 重复）一律丢弃；
- heartbeat 使用独立计数器，可与执行请求交错，不占用执行序号。
"""

from __future__ import annotations

import logging
import socket
import time
from typing import Any, Dict, Optional

from research_bridge.core.errors import ProtocolError, RequestInFlight
from research_bridge.runtime.protocol import (
    KIND_HEARTBEAT,
    KIND_REQUEST,
    KIND_RESPONSE,
    Frame,
    FrameSocket,
)

logger = logging.getLogger(__name__)


class Channel:
    """supervisor 与单个 worker 之间的请求/响应通道。"""

    def __init__(self, sock: socket.socket, *, max_frame_bytes: int) -> None:
        """
        参数：
        - sock：已 accept 的 worker 连接
        - max_frame_bytes：单帧最大字节数
        """

        self._io = FrameSocket(sock, max_frame_bytes=max_frame_bytes)
        self._next_seq = 1
        self._next_heartbeat = 1
        self._outstanding: Optional[int] = None
        # 等待 heartbeat 时读到的、属于 outstanding request 的 response
        self._stashed: Optional[Dict[str, Any]] = None
        self.last_heartbeat_ms: Optional[int] = None

    @property
    def outstanding(self) -> Optional[int]:
        """当前 outstanding request 的 seq（无则 None）。"""

        return self._outstanding

    @property
    def next_seq(self) -> int:
        """下一个请求将使用的 seq。"""

        return self._next_seq

    @property
    def closed(self) -> bool:
        """通道是否已关闭。"""

        return self._io.closed

    def await_handshake(self, timeout_sec: float) -> Optional[Dict[str, Any]]:
        """
        等待 worker 的 ready 握手帧（`heartbeat` + `payload.ready=true`）。

        返回：
        - dict：握手 payload（pid/python 等）
        - None：超时
        """

        deadline = time.monotonic() + float(timeout_sec)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            frame = self._io.recv(remaining)
            if frame is None:
                return None
            if frame.kind == KIND_HEARTBEAT and frame.payload.get("ready") is True:
                self.last_heartbeat_ms = int(time.time() * 1000)
                return dict(frame.payload)
            logger.debug("discarding pre-handshake frame: kind=%s seq=%s", frame.kind, frame.seq)

    def send_request(self, payload: Dict[str, Any]) -> int:
        """
        发送一个请求并返回其 seq。

        异常：
        - RequestInFlight：已有 outstanding request
        """

        if self._outstanding is not None:
            raise RequestInFlight(
                "a request is already outstanding on this channel",
                details={"outstanding_seq": self._outstanding},
            )
        seq = self._next_seq
        self._io.send(Frame(seq=seq, kind=KIND_REQUEST, payload=dict(payload)))
        self._next_seq += 1
        self._outstanding = seq
        self._stashed = None
        return seq

    def _accept_response(self, frame: Frame) -> bool:
        """判断 response 是否属于 outstanding request；否则记录并丢弃。"""

        if self._outstanding is not None and frame.seq == self._outstanding:
            return True
        logger.debug("discarding unmatched response: seq=%s outstanding=%s", frame.seq, self._outstanding)
        return False

    def await_response(self, timeout_sec: float) -> Optional[Dict[str, Any]]:
        """
        等待 outstanding request 的 response。

        返回：
        - dict：response payload（同时清除 outstanding）
        - None：超时（outstanding 保持不变，可再次等待）

        异常：
        - ChannelClosed：worker 断开
        - ProtocolError：无 outstanding request / 帧格式错误
        """

        if self._outstanding is None:
            raise ProtocolError("no outstanding request to wait for")
        if self._stashed is not None:
            payload, self._stashed = self._stashed, None
            self._outstanding = None
            return payload

        deadline = time.monotonic() + max(0.0, float(timeout_sec))
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            frame = self._io.recv(remaining)
            if frame is None:
                return None
            if frame.kind == KIND_HEARTBEAT:
                self.last_heartbeat_ms = int(time.time() * 1000)
                continue
            if frame.kind == KIND_RESPONSE and self._accept_response(frame):
                self._outstanding = None
                return dict(frame.payload)
            if frame.kind == KIND_REQUEST:
                logger.debug("discarding unexpected request frame from worker: seq=%s", frame.seq)

    def heartbeat(self, timeout_sec: float) -> bool:
        """
        发送 heartbeat 并等待同 seq 的回应。

        说明：
        - 等待期间读到的 outstanding response 会被暂存，供下一次 `await_response` 取用；
        - heartbeat 计数器与执行序号互不影响。

        返回：
        - bool：是否在超时内收到回应
        """

        hb = self._next_heartbeat
        self._next_heartbeat += 1
        self._io.send(Frame(seq=hb, kind=KIND_HEARTBEAT, payload={}))
        deadline = time.monotonic() + max(0.0, float(timeout_sec))
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            frame = self._io.recv(remaining)
            if frame is None:
                return False
            if frame.kind == KIND_HEARTBEAT:
                self.last_heartbeat_ms = int(time.time() * 1000)
                if frame.seq == hb:
                    return True
                continue
            if frame.kind == KIND_RESPONSE and self._accept_response(frame):
                self._stashed = dict(frame.payload)

    def abandon_outstanding(self) -> None:
        """放弃 outstanding request（仅在 worker 被终止后调用）。"""

        self._outstanding = None
        self._stashed = None

    def close(self) -> None:
        """关闭通道。"""

        self._io.close()
