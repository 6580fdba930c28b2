"""
Workspace index（README 中的 sentinel 区块）。

约束：
- 只重写 BEGIN/END sentinel 之间的字节，区块外的内容逐字节保留；
- 文件中没有 sentinel 时在末尾追加一个新区块；
- sentinel 不成对、重复或顺序颠倒时抛 `IndexSentinelError`，且不写文件。
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from research_bridge.core.errors import IndexSentinelError, IndexUnreadable, MalformedMetadata
from research_bridge.core.utils import atomic_write_text
from research_bridge.notebook.document import NotebookDocument

logger = logging.getLogger(__name__)

BEGIN_SENTINEL = "<!-- research-bridge:index:begin -->"
END_SENTINEL = "<!-- research-bridge:index:end -->"


def replace_sentinel_region(text: str, body: str) -> str:
    """
    用 body 替换 sentinel 之间的内容。

    参数：
    - text：原文件内容
    - body：新的区块内容（不含 sentinel）

    异常：
    - IndexSentinelError：sentinel 数量不是 0/0 或 1/1，或 END 在 BEGIN 之前
    """

    inner = "\n" + body if not body.startswith("\n") else body
    if not inner.endswith("\n"):
        inner += "\n"
    n_begin = text.count(BEGIN_SENTINEL)
    n_end = text.count(END_SENTINEL)
    if n_begin == 0 and n_end == 0:
        prefix = text
        if prefix and not prefix.endswith("\n"):
            prefix += "\n"
        if prefix:
            prefix += "\n"
        return f"{prefix}{BEGIN_SENTINEL}{inner}{END_SENTINEL}\n"
    if n_begin != 1 or n_end != 1:
        raise IndexSentinelError(
            "index sentinels must appear exactly once each",
            details={"begin_count": n_begin, "end_count": n_end},
        )
    b = text.index(BEGIN_SENTINEL)
    e = text.index(END_SENTINEL)
    if e < b:
        raise IndexSentinelError("index end sentinel appears before begin sentinel")
    start = b + len(BEGIN_SENTINEL)
    return text[:start] + inner + text[e:]


@dataclass(frozen=True)
class IndexEntry:
    """索引中的一行（一个 notebook）。"""

    slug: str
    path: str
    status: str
    updated: str
    runs: int
    score: Optional[int]
    passed: Optional[bool]


class WorkspaceIndex:
    """从 workspace 中的 notebook 重建 README 索引区块。"""

    def __init__(self, workspace: Path, *, filename: str = "README.md") -> None:
        """
        参数：
        - workspace：工作区目录
        - filename：索引文件名（相对 workspace）
        """

        self.workspace = Path(workspace).resolve()
        self.path = self.workspace / filename

    def scan(self) -> list[IndexEntry]:
        """
        扫描 workspace 下的 notebook，按 slug 排序。

        说明：
        - 跳过 checkpoint 目录；
        - 无法读取或 metadata 无法解析的文件只记 WARNING，不影响其它 notebook 的索引。
        """

        entries: list[IndexEntry] = []
        for nb_path in sorted(self.workspace.rglob("*.ipynb")):
            if ".ipynb_checkpoints" in nb_path.parts:
                continue
            try:
                doc = NotebookDocument.load(nb_path)
            except (MalformedMetadata, OSError) as e:
                logger.warning("skipping unreadable notebook: path=%s err=%s", nb_path, e)
                continue
            quality = doc.quality() or {}
            entries.append(
                IndexEntry(
                    slug=doc.frontmatter.slug,
                    path=os.path.relpath(nb_path, self.workspace),
                    status=doc.frontmatter.status,
                    updated=doc.frontmatter.updated,
                    runs=len(doc.code_cells),
                    score=quality.get("score"),
                    passed=quality.get("passed"),
                )
            )
        entries.sort(key=lambda x: (x.slug, x.path))
        return entries

    @staticmethod
    def render(entries: list[IndexEntry]) -> str:
        """渲染为 markdown 表格（区块内容，由本模块完全生成）。"""

        lines = [
            "| Notebook | Status | Updated | Cells | Quality |",
            "| --- | --- | --- | --- | --- |",
        ]
        for e in entries:
            if e.score is None:
                quality = "-"
            else:
                quality = f"{e.score}/100 {'pass' if e.passed else 'fail'}"
            lines.append(f"| [{e.slug}]({e.path}) | {e.status} | {e.updated} | {e.runs} | {quality} |")
        return "\n".join(lines) + "\n"

    def write(self) -> bool:
        """
        重新生成索引区块并原子写回。

        返回：
        - bool：文件内容是否发生变化

        异常：
        - IndexSentinelError：现有 sentinel 非法（文件不变）
        - IndexUnreadable：现有文件不是 utf-8（文件不变）
        """

        try:
            current = self.path.read_bytes().decode("utf-8")
        except FileNotFoundError:
            current = ""
        except UnicodeDecodeError as e:
            raise IndexUnreadable(
                "index file is not valid utf-8",
                details={"path": str(self.path), "error": str(e)},
            ) from e
        updated = replace_sentinel_region(current, self.render(self.scan()))
        if updated == current:
            return False
        atomic_write_text(self.path, updated)
        logger.debug("workspace index written: path=%s", self.path)
        return True
