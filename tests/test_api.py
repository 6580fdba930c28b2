from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from research_bridge.api import (
    close_session,
    execute_code,
    get_quality_report,
    list_sessions,
    open_session,
    recompute_quality,
    unlock,
    wait_for_result,
)
from research_bridge.core.errors import MalformedMetadata, SessionLocked
from research_bridge.notebook.document import NotebookDocument
from research_bridge.runtime.supervisor import ExecutionStatus

pytestmark = pytest.mark.skipif(os.name == "nt", reason="worker transport uses Unix domain sockets")


def test_research_session_end_to_end(make_config, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config()
    ws = tmp_path / "ws"
    ws.mkdir()

    session = open_session("churn", workspace=ws, interpreter_path=sys.executable, tags=["ml"], config=cfg)
    try:
        [info] = list_sessions(config=cfg)
        assert info.session_id == "churn"
        assert info.live is True

        execute_code(session, "print('[STAT:ci] 95% CI [0.12, 0.31]')")
        execute_code(session, "print('[STAT:effect_size] d=0.45')")
        r = execute_code(session, "print('[FINDING] retention improves')")
        assert r.status == ExecutionStatus.OK

        report = get_quality_report(session)
        assert report.passed is True
        assert report.score == 100
        assert session.last_sync is not None and session.last_sync.quality == report

        doc = NotebookDocument.load(session.notebook_path)
        assert session.notebook_path == (ws / "churn.ipynb").resolve()
        assert doc.frontmatter.tags == ["ml"]
        assert len(doc.code_cells) == 3
        assert "[churn](churn.ipynb)" in (ws / "README.md").read_text(encoding="utf-8")
    finally:
        close_session(session)

    assert list_sessions(config=cfg) == []
    close_session(session)


def test_timeout_then_wait_records_the_late_result(make_config, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config()
    ws = tmp_path / "ws"
    ws.mkdir()

    with open_session("slow", workspace=ws, interpreter_path=sys.executable, config=cfg) as session:
        r = execute_code(session, "import time\ntime.sleep(1)\nprint('[METRIC:rows] 10')", timeout_ms=50)
        assert r.status == ExecutionStatus.TIMEOUT
        assert NotebookDocument.load(session.notebook_path).code_cells == []

        late = wait_for_result(session, timeout_ms=10_000)
        assert late.status == ExecutionStatus.OK

        doc = NotebookDocument.load(session.notebook_path)
        assert len(doc.code_cells) == 1
        assert "time.sleep(1)" in doc.code_cells[0].source
        assert doc.code_cells[0].metadata["research_bridge"]["markers"][0]["type"] == "METRIC"


def test_reopening_a_locked_session_fails_and_unlock_requires_force(make_config, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config()
    ws = tmp_path / "ws"
    ws.mkdir()

    first = open_session("shared", workspace=ws, interpreter_path=sys.executable, config=cfg, start=False)
    try:
        with pytest.raises(SessionLocked):
            open_session("shared", workspace=ws, interpreter_path=sys.executable, config=cfg, start=False)
        with pytest.raises(SessionLocked):
            unlock("shared", config=cfg)
        assert unlock("shared", force=True, config=cfg) is True
    finally:
        close_session(first)


def test_malformed_notebook_releases_lock(make_config, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config()
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "broken.ipynb").write_text("{not json", encoding="utf-8")

    with pytest.raises(MalformedMetadata):
        open_session("broken", workspace=ws, interpreter_path=sys.executable, config=cfg)

    assert (ws / "broken.ipynb").read_text(encoding="utf-8") == "{not json"
    assert list_sessions(config=cfg) == []


def test_quality_write_back_requires_the_session_lock(make_config, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config()
    ws = tmp_path / "ws"
    ws.mkdir()

    session = open_session("audit", workspace=ws, interpreter_path=sys.executable, config=cfg, start=False)
    try:
        doc = NotebookDocument.load(session.notebook_path)
        doc.append_cell("print()", stdout="[FINDING] unsupported\n")
        doc.save()
        before = session.notebook_path.read_bytes()

        assert recompute_quality(session.notebook_path, config=cfg).score == 40
        with pytest.raises(SessionLocked):
            recompute_quality(session.notebook_path, write=True, config=cfg)
        assert session.notebook_path.read_bytes() == before
    finally:
        close_session(session)

    result = recompute_quality(session.notebook_path, write=True, config=cfg)
    assert result.score == 40
    q = NotebookDocument.load(session.notebook_path).quality()
    assert q is not None and q["score"] == 40
    assert list_sessions(config=cfg) == []
