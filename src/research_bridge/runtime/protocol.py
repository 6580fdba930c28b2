"""
supervisor ↔ worker 传输帧（JSON Lines over Unix socket）。

帧格式（每行一个 JSON object，utf-8，`\\n` 结尾）：
- `seq`：序号（request/response 使用执行序号；heartbeat 使用独立计数器）
- `kind`：`request` | `response` | `heartbeat`
- `payload`：JSON object

约束：
- 本模块只依赖标准库：worker 运行在用户指定的解释器中，不保证安装了本包的第三方依赖。
"""

from __future__ import annotations

import json
import select
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from research_bridge.core.errors import ProtocolError

KIND_REQUEST = "request"
KIND_RESPONSE = "response"
KIND_HEARTBEAT = "heartbeat"
FRAME_KINDS = (KIND_REQUEST, KIND_RESPONSE, KIND_HEARTBEAT)

DEFAULT_MAX_FRAME_BYTES = 16 * 1024 * 1024


class ChannelClosed(EOFError):
    """对端关闭连接（worker 退出或 supervisor 断开）。"""


@dataclass(frozen=True)
class Frame:
    """单个传输帧。"""

    seq: int
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


def encode_frame(frame: Frame) -> bytes:
    """将帧编码为一行 JSON（含结尾换行）。"""

    if frame.kind not in FRAME_KINDS:
        raise ProtocolError(f"unknown frame kind: {frame.kind!r}")
    obj = {"seq": int(frame.seq), "kind": frame.kind, "payload": dict(frame.payload)}
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + b"\n"


def decode_frame(line: bytes) -> Frame:
    """
    解码一行 JSON 为帧。

    异常：
    - ProtocolError：非法 JSON / 缺少字段 / 未知 kind
    """

    try:
        obj = json.loads(line.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid frame json: {e}") from e
    if not isinstance(obj, dict):
        raise ProtocolError("frame must be a json object")
    kind = obj.get("kind")
    if kind not in FRAME_KINDS:
        raise ProtocolError(f"unknown frame kind: {kind!r}")
    seq = obj.get("seq")
    if not isinstance(seq, int) or isinstance(seq, bool):
        raise ProtocolError("frame seq must be an integer")
    payload = obj.get("payload") or {}
    if not isinstance(payload, dict):
        raise ProtocolError("frame payload must be an object")
    return Frame(seq=seq, kind=str(kind), payload=payload)


class FrameSocket:
    """
    在已连接的 stream socket 上读写帧。

    说明：
    - 写入加锁（worker 的 reader 线程与执行线程会并发写）；
    - 读取只允许单线程使用（内部缓冲未加锁）。
    """

    def __init__(self, sock: socket.socket, *, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        """
        包装已连接 socket。

        参数：
        - sock：AF_UNIX stream socket
        - max_frame_bytes：单帧最大字节数（超出视为协议错误）
        """

        self._sock = sock
        self._max_frame_bytes = int(max_frame_bytes)
        self._buf = bytearray()
        self._send_lock = threading.Lock()
        self.closed = False

    def send(self, frame: Frame) -> None:
        """发送一帧（对端已关闭时抛 ChannelClosed）。"""

        data = encode_frame(frame)
        with self._send_lock:
            try:
                self._sock.sendall(data)
            except (BrokenPipeError, ConnectionResetError, OSError) as e:
                raise ChannelClosed(str(e)) from e

    def recv(self, timeout_sec: Optional[float]) -> Optional[Frame]:
        """
        读取下一帧。

        参数：
        - timeout_sec：最长等待秒数；None 表示一直阻塞

        返回：
        - Frame：成功读取
        - None：超时（缓冲中的半帧保留到下次）

        异常：
        - ChannelClosed：对端关闭
        - ProtocolError：帧超限或格式错误
        """

        deadline = None if timeout_sec is None else time.monotonic() + max(0.0, float(timeout_sec))
        while True:
            nl = self._buf.find(b"\n")
            if nl > self._max_frame_bytes:
                raise ProtocolError(f"frame exceeds max_frame_bytes={self._max_frame_bytes}")
            if nl >= 0:
                line = bytes(self._buf[:nl])
                del self._buf[: nl + 1]
                if not line.strip():
                    continue
                return decode_frame(line)
            if len(self._buf) > self._max_frame_bytes:
                raise ProtocolError(f"frame exceeds max_frame_bytes={self._max_frame_bytes}")

            wait: Optional[float] = None
            if deadline is not None:
                wait = deadline - time.monotonic()
                if wait <= 0:
                    return None
            try:
                rlist, _, _ = select.select([self._sock], [], [], wait)
            except (OSError, ValueError) as e:
                raise ChannelClosed(str(e)) from e
            if not rlist:
                return None
            try:
                chunk = self._sock.recv(65536)
            except (ConnectionResetError, OSError) as e:
                raise ChannelClosed(str(e)) from e
            if not chunk:
                self.closed = True
                raise ChannelClosed("peer closed the connection")
            self._buf.extend(chunk)

    def close(self) -> None:
        """关闭 socket（幂等）。"""

        self.closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()
