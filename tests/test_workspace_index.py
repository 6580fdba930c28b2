from __future__ import annotations

from pathlib import Path

import pytest

from research_bridge.core.errors import IndexSentinelError, IndexUnreadable
from research_bridge.evidence.quality_gates import run_quality_gates
from research_bridge.notebook.document import NotebookDocument
from research_bridge.notebook.index import (
    BEGIN_SENTINEL,
    END_SENTINEL,
    WorkspaceIndex,
    replace_sentinel_region,
)


def test_replace_preserves_bytes_outside_region() -> None:
    text = f"# Title\r\n\r\nintro\r\n{BEGIN_SENTINEL}\nold table\n{END_SENTINEL}\r\ntrailer  \r\n"
    out = replace_sentinel_region(text, "new table\n")

    before, _, rest = out.partition(BEGIN_SENTINEL)
    inner, _, after = rest.partition(END_SENTINEL)
    assert before == "# Title\r\n\r\nintro\r\n"
    assert inner == "\nnew table\n"
    assert after == "\r\ntrailer  \r\n"


def test_missing_sentinels_append_block() -> None:
    assert replace_sentinel_region("", "t\n") == f"{BEGIN_SENTINEL}\nt\n{END_SENTINEL}\n"
    assert replace_sentinel_region("# Notes", "t\n") == f"# Notes\n\n{BEGIN_SENTINEL}\nt\n{END_SENTINEL}\n"


@pytest.mark.parametrize(
    "text",
    [
        f"{BEGIN_SENTINEL}\nonly begin\n",
        f"only end\n{END_SENTINEL}\n",
        f"{END_SENTINEL}\nreversed\n{BEGIN_SENTINEL}\n",
        f"{BEGIN_SENTINEL}\n{END_SENTINEL}\n{BEGIN_SENTINEL}\n{END_SENTINEL}\n",
    ],
)
def test_broken_sentinels_raise(text: str) -> None:
    with pytest.raises(IndexSentinelError) as ei:
        replace_sentinel_region(text, "t\n")
    assert ei.value.code == "INDEX_SENTINEL_ERROR"


def _notebook(ws: Path, slug: str, *, quality_text: str = "") -> NotebookDocument:
    """在 workspace 中新建一个 notebook（可选写入门禁结果）。"""

    doc = NotebookDocument.create(ws / f"{slug}.ipynb", workspace=str(ws), slug=slug)
    if quality_text:
        doc.append_cell("print()", stdout=quality_text + "\n")
        doc.set_quality(run_quality_gates(quality_text))
        doc.save()
    return doc


def test_scan_and_render_lists_notebooks(tmp_path: Path) -> None:
    _notebook(tmp_path, "beta", quality_text="[FINDING] x")
    _notebook(tmp_path, "alpha")
    (tmp_path / ".ipynb_checkpoints").mkdir()
    (tmp_path / ".ipynb_checkpoints" / "alpha-checkpoint.ipynb").write_text("{}", encoding="utf-8")
    (tmp_path / "broken.ipynb").write_text("{not json", encoding="utf-8")

    idx = WorkspaceIndex(tmp_path)
    entries = idx.scan()
    assert [e.slug for e in entries] == ["alpha", "beta"]
    assert entries[1].runs == 1
    assert entries[1].score == 40 and entries[1].passed is False

    table = WorkspaceIndex.render(entries)
    assert "| [alpha](alpha.ipynb) | active |" in table
    assert "40/100 fail" in table


def test_write_is_idempotent_and_keeps_surrounding_text(tmp_path: Path) -> None:
    _notebook(tmp_path, "study")
    readme = tmp_path / "README.md"
    readme.write_bytes(b"# Workspace\r\n\r\nHand-written notes.\r\n")

    idx = WorkspaceIndex(tmp_path)
    assert idx.write() is True
    text = readme.read_bytes().decode("utf-8")
    assert text.startswith("# Workspace\r\n\r\nHand-written notes.\r\n")
    assert "[study](study.ipynb)" in text

    assert idx.write() is False
    assert readme.read_bytes().decode("utf-8") == text


def test_write_with_broken_sentinels_leaves_file_untouched(tmp_path: Path) -> None:
    _notebook(tmp_path, "study")
    readme = tmp_path / "README.md"
    original = f"# W\n{END_SENTINEL}\n{BEGIN_SENTINEL}\n".encode("utf-8")
    readme.write_bytes(original)

    with pytest.raises(IndexSentinelError):
        WorkspaceIndex(tmp_path).write()
    assert readme.read_bytes() == original


def test_write_creates_index_file_when_missing(tmp_path: Path) -> None:
    idx = WorkspaceIndex(tmp_path, filename="INDEX.md")
    assert idx.write() is True
    text = (tmp_path / "INDEX.md").read_text(encoding="utf-8")
    assert text.startswith(BEGIN_SENTINEL)
    assert "| Notebook | Status | Updated | Cells | Quality |" in text


def test_scan_skips_non_utf8_and_naive_timestamp_notebooks(tmp_path: Path) -> None:
    _notebook(tmp_path, "good")
    (tmp_path / "latin1.ipynb").write_bytes(b'{"cells": "\xff"}')
    naive = _notebook(tmp_path, "naive")
    naive.frontmatter.created = "2000-01-01T00:00:00"
    naive.frontmatter.updated = "2000-01-02T00:00:00Z"
    naive.save()

    entries = WorkspaceIndex(tmp_path).scan()
    assert [e.slug for e in entries] == ["good", "naive"]


def test_write_with_non_utf8_index_leaves_file_untouched(tmp_path: Path) -> None:
    _notebook(tmp_path, "study")
    readme = tmp_path / "README.md"
    original = b"notes \xff\xfe\n"
    readme.write_bytes(original)

    with pytest.raises(IndexUnreadable) as ei:
        WorkspaceIndex(tmp_path).write()
    assert ei.value.code == "INDEX_UNREADABLE"
    assert readme.read_bytes() == original
