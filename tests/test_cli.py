from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict

import pytest

from research_bridge.bootstrap import ENV_RUNTIME_DIR
from research_bridge.cli.main import main
from research_bridge.notebook.document import NotebookDocument
from research_bridge.notebook.index import BEGIN_SENTINEL, END_SENTINEL
from research_bridge.runtime.lock import acquire_session_lock
from research_bridge.runtime.paths import get_session_paths, resolve_runtime_dir


def _parse_last_json(stdout: str) -> Dict[str, Any]:
    """解析 stdout 最后一行 JSON（CLI 约定：stdout 为单个 JSON）。"""

    text = (stdout or "").strip().splitlines()[-1]
    obj = json.loads(text)
    assert isinstance(obj, dict)
    return obj


@pytest.fixture
def runtime_dir(tmp_path: Path, monkeypatch) -> Path:  # type: ignore[no-untyped-def]
    """把 runtime 目录指向 tmp_path，避免与真实 session 冲突。"""

    rd = tmp_path / "rt"
    monkeypatch.setenv(ENV_RUNTIME_DIR, str(rd))
    return resolve_runtime_dir(str(rd))


@pytest.mark.skipif(os.name == "nt", reason="session locks rely on fcntl")
def test_sessions_list_and_unlock(tmp_path: Path, runtime_dir: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    paths = get_session_paths(runtime_dir=runtime_dir, session_id="exp-1")
    handle = acquire_session_lock(paths=paths, session_id="exp-1", stale_after_ms=10_000)
    try:
        code = main(["sessions", "list", "--workspace-root", str(tmp_path)])
        payload = _parse_last_json(capsys.readouterr().out)
        assert code == 0
        assert payload["ok"] is True
        [info] = payload["sessions"]
        assert info["session_id"] == "exp-1"
        assert info["live"] is True
        assert info["owner_pid"] == os.getpid()

        code = main(["sessions", "unlock", "exp-1", "--workspace-root", str(tmp_path)])
        payload = _parse_last_json(capsys.readouterr().out)
        assert code == 1
        assert payload["issues"][0]["code"] == "SESSION_LOCKED"
        assert paths.lock_path.exists()

        code = main(["sessions", "unlock", "exp-1", "--force", "--workspace-root", str(tmp_path)])
        payload = _parse_last_json(capsys.readouterr().out)
        assert code == 0
        assert payload["removed"] is True
        assert not paths.lock_path.exists()
    finally:
        handle.release()


def test_sessions_unlock_rejects_invalid_id(tmp_path: Path, runtime_dir: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    code = main(["sessions", "unlock", "../etc", "--workspace-root", str(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 1
    assert payload["issues"][0]["code"] == "CLI_FAILED"


@pytest.mark.skipif(os.name == "nt", reason="session locks rely on fcntl")
def test_quality_command_recomputes_and_writes(tmp_path: Path, runtime_dir: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    nb_path = tmp_path / "study.ipynb"
    doc = NotebookDocument.create(nb_path, workspace=str(tmp_path), slug="study")
    doc.append_cell("print()", stdout="[FINDING] unsupported claim\n")
    doc.save()

    code = main(["quality", str(nb_path), "--workspace-root", str(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 0
    assert payload["quality"]["score"] == 40
    assert payload["quality"]["passed"] is False
    assert NotebookDocument.load(nb_path).quality() is None

    code = main(["quality", str(nb_path), "--write", "--workspace-root", str(tmp_path)])
    assert code == 0
    capsys.readouterr()
    q = NotebookDocument.load(nb_path).quality()
    assert q is not None and q["score"] == 40


@pytest.mark.skipif(os.name == "nt", reason="session locks rely on fcntl")
def test_quality_write_refuses_while_session_owner_is_live(tmp_path: Path, runtime_dir: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    nb_path = tmp_path / "study.ipynb"
    doc = NotebookDocument.create(nb_path, workspace=str(tmp_path), slug="study")
    doc.append_cell("print()", stdout="[FINDING] unsupported claim\n")
    doc.save()
    before = nb_path.read_bytes()

    paths = get_session_paths(runtime_dir=runtime_dir, session_id="study")
    handle = acquire_session_lock(paths=paths, session_id="study", stale_after_ms=10_000)
    try:
        code = main(["quality", str(nb_path), "--write", "--workspace-root", str(tmp_path)])
        payload = _parse_last_json(capsys.readouterr().out)
        assert code == 1
        assert payload["issues"][0]["code"] == "SESSION_LOCKED"
        assert nb_path.read_bytes() == before

        # 只读重算不需要 lock
        code = main(["quality", str(nb_path), "--workspace-root", str(tmp_path)])
        assert code == 0
        capsys.readouterr()
    finally:
        handle.release()

    code = main(["quality", str(nb_path), "--write", "--session-id", "study", "--workspace-root", str(tmp_path)])
    capsys.readouterr()
    assert code == 0
    assert not paths.lock_path.exists()
    q = NotebookDocument.load(nb_path).quality()
    assert q is not None and q["score"] == 40


def test_quality_command_reports_malformed_metadata(tmp_path: Path, runtime_dir: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    bad = tmp_path / "bad.ipynb"
    bad.write_text("{not json", encoding="utf-8")

    code = main(["quality", str(bad), "--workspace-root", str(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 1
    assert payload["issues"][0]["code"] == "MALFORMED_METADATA"


def test_index_command(tmp_path: Path, runtime_dir: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    NotebookDocument.create(tmp_path / "study.ipynb", workspace=str(tmp_path), slug="study")

    code = main(["index", str(tmp_path), "--workspace-root", str(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 0
    assert payload["changed"] is True
    assert "[study](study.ipynb)" in (tmp_path / "README.md").read_text(encoding="utf-8")

    (tmp_path / "README.md").write_text(f"{END_SENTINEL}\n{BEGIN_SENTINEL}\n", encoding="utf-8")
    code = main(["index", str(tmp_path), "--workspace-root", str(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 1
    assert payload["issues"][0]["code"] == "INDEX_SENTINEL_ERROR"


def test_bad_arguments_exit_2(capsys) -> None:  # type: ignore[no-untyped-def]
    assert main([]) == 2
    assert main(["sessions", "frobnicate"]) == 2
    capsys.readouterr()


def test_cli_help_does_not_crash_in_c_locale(tmp_path: Path) -> None:
    """
    回归：help 文本含中文，ASCII stdout 下启动不应崩溃。
    """

    src = Path(__file__).resolve().parents[1] / "src"
    env = dict(os.environ)
    env["PYTHONPATH"] = str(src)
    env["LANG"] = "C"
    env["LC_ALL"] = "C"
    env["PYTHONIOENCODING"] = "ascii"

    p = subprocess.run(  # noqa: S603
        [sys.executable, "-m", "research_bridge.cli.main", "--help"],
        cwd=str(tmp_path),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        timeout=10,
    )
    assert p.returncode == 0, (p.stdout, p.stderr)
