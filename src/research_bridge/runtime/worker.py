"""
Interpreter Worker（持久化 Python 执行进程）。

启动方式（由 supervisor 负责）：
    <interpreter> -u -m research_bridge.runtime.worker --connect <socket_path>

行为：
- 连接 supervisor 监听的 Unix socket，先发送 ready 握手（heartbeat 帧，payload.ready=true）；
- reader 线程负责读帧：heartbeat 立即回应（即使用户代码仍在执行），request 交给主线程顺序执行；
- 用户代码在同一个 namespace 中执行，绑定跨调用保留；最后一个表达式的值按 REPL 习惯打印 repr；
- supervisor 断开（EOF）即退出，避免遗留孤儿进程。

约束：
- 只依赖标准库（运行在用户指定的解释器中）。
"""

from __future__ import annotations

import argparse
import ast
import builtins
import contextlib
import io
import os
import queue
import socket
import sys
import threading
import time
import traceback
from typing import Any, Dict, Optional, Sequence

from research_bridge.runtime.protocol import (
    KIND_HEARTBEAT,
    KIND_REQUEST,
    KIND_RESPONSE,
    ChannelClosed,
    Frame,
    FrameSocket,
)


def _fresh_namespace() -> Dict[str, Any]:
    """创建用户代码的全局 namespace（等价于 `__main__`）。"""

    return {"__name__": "__main__", "__builtins__": builtins}


def _tail_truncate(text: str, max_bytes: int) -> tuple[str, bool]:
    """
    尾部保留截断：超出上限时丢弃头部（utf-8 字节计）。

    返回：
    - (text, truncated)
    """

    if max_bytes < 0:
        return text, False
    b = text.encode("utf-8", errors="replace")
    if len(b) <= max_bytes:
        return text, False
    return b[len(b) - max_bytes :].decode("utf-8", errors="ignore"), True


class Worker:
    """单个 session 的执行进程状态。"""

    def __init__(self, channel: FrameSocket) -> None:
        """
        参数：
        - channel：已连接 supervisor 的帧通道
        """

        self._channel = channel
        self._namespace = _fresh_namespace()
        self._requests: "queue.Queue[Optional[Frame]]" = queue.Queue()
        self._busy = False
        self._cell = 0

    def _reader(self) -> None:
        """reader 线程入口：分发 heartbeat / request；EOF 时直接退出进程。"""

        try:
            while True:
                frame = self._channel.recv(None)
                if frame is None:
                    continue
                if frame.kind == KIND_HEARTBEAT:
                    self._channel.send(Frame(seq=frame.seq, kind=KIND_HEARTBEAT, payload={"busy": self._busy}))
                elif frame.kind == KIND_REQUEST:
                    self._requests.put(frame)
        except ChannelClosed:
            # owner 已不存在：不再等待正在执行的用户代码
            os._exit(0)
        except Exception:
            traceback.print_exc(file=sys.__stderr__)
            os._exit(70)

    def execute(self, code: str, *, max_output_bytes: int) -> Dict[str, Any]:
        """
        在持久 namespace 中执行代码并捕获输出。

        返回：
        - response payload：stdout/stderr/exception_trace/status/duration_ms/truncated
        """

        self._cell += 1
        filename = f"<cell-{self._cell}>"
        out = io.StringIO()
        err = io.StringIO()
        trace: Optional[str] = None
        started = time.monotonic()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            try:
                tree = ast.parse(code, filename=filename, mode="exec")
                last: Optional[ast.Expression] = None
                if tree.body and isinstance(tree.body[-1], ast.Expr):
                    last = ast.Expression(tree.body.pop().value)
                exec(compile(tree, filename, "exec"), self._namespace)
                if last is not None:
                    value = eval(compile(last, filename, "eval"), self._namespace)
                    if value is not None:
                        print(repr(value))
            except BaseException as e:  # noqa: BLE001 - 用户代码的任何异常（含 SystemExit）都作为数据返回
                if isinstance(e, KeyboardInterrupt):
                    trace = "KeyboardInterrupt\n"
                else:
                    trace = "".join(traceback.format_exception(type(e), e, e.__traceback__))
        duration_ms = int((time.monotonic() - started) * 1000)
        stdout, t1 = _tail_truncate(out.getvalue(), max_output_bytes)
        stderr, t2 = _tail_truncate(err.getvalue(), max_output_bytes)
        return {
            "stdout": stdout,
            "stderr": stderr,
            "exception_trace": trace,
            "status": "error" if trace is not None else "ok",
            "duration_ms": duration_ms,
            "truncated": bool(t1 or t2),
        }

    def _user_bindings(self) -> list[str]:
        """返回用户定义的绑定名（排除 dunder）。"""

        return sorted(k for k in self._namespace if not (k.startswith("__") and k.endswith("__")))

    def handle(self, frame: Frame) -> bool:
        """
        处理一个 request 帧并回写 response。

        返回：
        - bool：是否继续服务（shutdown 返回 False）
        """

        op = str(frame.payload.get("op") or "")
        keep_running = True
        if op == "execute":
            self._busy = True
            try:
                payload = self.execute(
                    str(frame.payload.get("code") or ""),
                    max_output_bytes=int(frame.payload.get("max_output_bytes", -1)),
                )
            finally:
                self._busy = False
        elif op == "reset":
            self._namespace = _fresh_namespace()
            payload = {"status": "ok"}
        elif op == "state":
            payload = {"status": "ok", "bindings": self._user_bindings(), "cells": self._cell}
        elif op == "shutdown":
            payload = {"status": "ok"}
            keep_running = False
        else:
            payload = {"status": "error", "error": f"unknown op: {op!r}"}
        self._channel.send(Frame(seq=frame.seq, kind=KIND_RESPONSE, payload=payload))
        return keep_running

    def serve(self) -> int:
        """主循环：发送握手，然后顺序处理请求直到 shutdown。"""

        self._channel.send(
            Frame(
                seq=0,
                kind=KIND_HEARTBEAT,
                payload={"ready": True, "pid": os.getpid(), "python": sys.version.split()[0]},
            )
        )
        threading.Thread(target=self._reader, name="worker-reader", daemon=True).start()
        while True:
            frame = self._requests.get()
            if frame is None:
                return 0
            if not self.handle(frame):
                return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    模块入口：连接 supervisor 并进入服务循环。

    参数：
    - argv：命令行参数（`--connect <socket_path>`）
    """

    parser = argparse.ArgumentParser(prog="research_bridge.runtime.worker")
    parser.add_argument("--connect", required=True, help="Supervisor unix socket path.")
    parser.add_argument("--max-frame-bytes", type=int, default=16 * 1024 * 1024)
    args = parser.parse_args(list(argv) if argv is not None else None)

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.connect(args.connect)
    channel = FrameSocket(sock, max_frame_bytes=args.max_frame_bytes)
    try:
        return Worker(channel).serve()
    finally:
        channel.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
