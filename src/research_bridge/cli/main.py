"""
research-bridge CLI（sessions / quality / index）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时也输出 JSON（`issues` 数组）
- exit code：0 成功；1 失败（含 session 仍被 live owner 持有）；2 参数错误
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError

from research_bridge.api import list_sessions, recompute_quality, unlock
from research_bridge.bootstrap import load_effective_config
from research_bridge.config.loader import BridgeConfig
from research_bridge.core.errors import BridgeError, BridgeIssue
from research_bridge.core.utf8 import ensure_utf8_stdio
from research_bridge.notebook.index import WorkspaceIndex


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _issue_payload(issue: BridgeIssue) -> Dict[str, Any]:
    """把问题对象包装为 CLI 失败输出。"""

    return {"ok": False, "issues": [{"code": issue.code, "message": issue.message, "details": issue.details}]}


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="research-bridge",
        description="research-bridge CLI（sessions/quality/index）。",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level for stderr (default: WARNING).")
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--workspace-root", default=".", help="Workspace root for config discovery (default: .)")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    sessions = root_sub.add_parser("sessions", help="Session lock commands")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd", required=True)

    ls = sessions_sub.add_parser("list", help="List session locks in the runtime directory")
    _add_common_flags(ls)

    ul = sessions_sub.add_parser("unlock", help="Remove a session lock")
    ul.add_argument("session_id")
    ul.add_argument("--force", action="store_true", help="Remove even if the owner heartbeat is still live.")
    _add_common_flags(ul)

    quality = root_sub.add_parser("quality", help="Recompute quality gates for a notebook")
    quality.add_argument("notebook")
    quality.add_argument(
        "--write",
        action="store_true",
        help="Store the result in the notebook metadata (acquires the session lock first).",
    )
    quality.add_argument("--session-id", default=None, help="Session owning the notebook (default: its slug).")
    _add_common_flags(quality)

    index = root_sub.add_parser("index", help="Regenerate the workspace index block")
    index.add_argument("workspace")
    _add_common_flags(index)

    return parser


def _load_config(args: argparse.Namespace) -> BridgeConfig:
    """按 bootstrap 规则加载配置（锚点为 `--workspace-root`）。"""

    return load_effective_config(workspace_root=Path(str(args.workspace_root)).expanduser().resolve())


def _handle_sessions(args: argparse.Namespace, cfg: BridgeConfig) -> int:
    """处理 `sessions list|unlock`。"""

    pretty = bool(args.pretty)
    if args.sessions_cmd == "list":
        infos = list_sessions(config=cfg)
        _dump_json_to_stdout({"ok": True, "sessions": [i.to_dict() for i in infos]}, pretty=pretty)
        return 0

    removed = unlock(str(args.session_id), force=bool(args.force), config=cfg)
    _dump_json_to_stdout({"ok": True, "session_id": args.session_id, "removed": removed}, pretty=pretty)
    return 0


def _handle_quality(args: argparse.Namespace, cfg: BridgeConfig) -> int:
    """处理 `quality <notebook>`：重算门禁；`--write` 时在 session lock 下写回 metadata。"""

    nb_path = Path(str(args.notebook)).expanduser().resolve()
    result = recompute_quality(nb_path, write=bool(args.write), session_id=args.session_id, config=cfg)
    payload = {"ok": True, "notebook": str(nb_path), "quality": result.model_dump(mode="json")}
    _dump_json_to_stdout(payload, pretty=bool(args.pretty))
    return 0


def _handle_index(args: argparse.Namespace, cfg: BridgeConfig) -> int:
    """处理 `index <workspace>`：重建 README 中的索引区块。"""

    idx = WorkspaceIndex(Path(str(args.workspace)).expanduser().resolve(), filename=cfg.notebook.index_filename)
    changed = idx.write()
    _dump_json_to_stdout({"ok": True, "index_path": str(idx.path), "changed": changed}, pretty=bool(args.pretty))
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    ensure_utf8_stdio()
    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    pretty = bool(getattr(args, "pretty", False))

    try:
        logging.basicConfig(
            level=str(args.log_level).upper(),
            stream=sys.stderr,
            format="%(levelname)s %(name)s: %(message)s",
        )
        cfg = _load_config(args)
        if args.command == "sessions":
            return _handle_sessions(args, cfg)
        if args.command == "quality":
            return _handle_quality(args, cfg)
        if args.command == "index":
            return _handle_index(args, cfg)
    except BridgeError as e:
        _dump_json_to_stdout(_issue_payload(e.to_issue()), pretty=pretty)
        return 1
    except (ValidationError, ValueError, OSError) as e:
        issue = BridgeIssue(code="CLI_FAILED", message=str(e), details={"type": type(e).__name__})
        _dump_json_to_stdout(_issue_payload(issue), pretty=pretty)
        return 1

    issue = BridgeIssue(code="CLI_COMMAND_INVALID", message="Unknown command.", details={"command": args.command})
    _dump_json_to_stdout(_issue_payload(issue), pretty=pretty)
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
