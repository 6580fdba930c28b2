"""
Notebook Synchronizer（执行结果 → 文档 + workspace index）。

每条执行结果：
1) 追加一个 code cell（源码、原始输出、该 cell 的 markers）；
2) 对完整 stdout 历史重算门禁结果，只写入 notebook metadata；
3) 刷新 `frontmatter.updated`，追加 run record（保留最近 N 条）；
4) 原子重写整个文档，然后重建 workspace index 区块。
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from research_bridge.config.loader import BridgeNotebookConfig
from research_bridge.core.errors import BridgeIssue, IndexSentinelError, IndexUnreadable
from research_bridge.evidence.markers import join_outputs, parse_markers
from research_bridge.evidence.quality_gates import QualityGateResult, evaluate_markers
from research_bridge.notebook.document import NotebookDocument, RunRecord
from research_bridge.notebook.index import WorkspaceIndex
from research_bridge.runtime.supervisor import ExecutionResult, ExecutionStatus

logger = logging.getLogger(__name__)


def _started_at(duration_ms: int) -> str:
    """由结束时刻与耗时反推开始时间（RFC3339，UTC）。"""

    ts = datetime.now(timezone.utc) - timedelta(milliseconds=max(0, int(duration_ms)))
    return ts.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class SyncOutcome:
    """
    一次同步的结果。

    字段：
    - quality：重算后的门禁结果
    - cell_index：新 cell 的下标
    - index_issue：index 区块无法重建时的问题（文档本身已写入）
    """

    quality: QualityGateResult
    cell_index: int
    index_issue: Optional[BridgeIssue] = None


class NotebookSynchronizer:
    """把一个 session 的执行结果持续写入它的 notebook。"""

    def __init__(
        self,
        document: NotebookDocument,
        *,
        config: Optional[BridgeNotebookConfig] = None,
        index: Optional[WorkspaceIndex] = None,
    ) -> None:
        """
        参数：
        - document：已加载或新建的 notebook
        - config：notebook 配置（run retention 等）
        - index：需要同步刷新的 workspace index（None 表示不维护）
        """

        self.document = document
        self._config = config or BridgeNotebookConfig()
        self._index = index

    @classmethod
    def open(
        cls,
        path: Path,
        *,
        workspace: Path,
        slug: str,
        tags: Optional[list[str]] = None,
        config: Optional[BridgeNotebookConfig] = None,
        index: Optional[WorkspaceIndex] = None,
    ) -> "NotebookSynchronizer":
        """
        打开已有 notebook，不存在时新建。

        异常：
        - MalformedMetadata：已有文件的 frontmatter 无法解析（不会被覆盖）
        """

        cfg = config or BridgeNotebookConfig()
        p = Path(path)
        if p.exists():
            doc = NotebookDocument.load(p)
        else:
            doc = NotebookDocument.create(
                p,
                workspace=str(workspace),
                slug=slug,
                tags=tags,
                schema_version=cfg.schema_version,
            )
            logger.info("notebook created: path=%s", p)
        return cls(doc, config=cfg, index=index)

    def quality_report(self) -> QualityGateResult:
        """对文档中的完整输出历史重算门禁结果。"""

        return evaluate_markers(parse_markers(join_outputs(self.document.output_history())))

    def refresh_index(self) -> Optional[BridgeIssue]:
        """
        重建 workspace index。

        说明：
        - notebook 已经写入，index 失败不能让执行结果丢失；
        - sentinel 非法、文件无法解码或写入失败时记 WARNING 并返回问题对象（index 文件保持不变）。
        """

        if self._index is None:
            return None
        try:
            self._index.write()
        except (IndexSentinelError, IndexUnreadable) as e:
            logger.warning("workspace index not updated: path=%s err=%s", self._index.path, e)
            return e.to_issue()
        except OSError as e:
            logger.warning("workspace index not written: path=%s err=%s", self._index.path, e)
            return BridgeIssue(
                code="INDEX_WRITE_FAILED",
                message=str(e),
                details={"path": str(self._index.path), "type": type(e).__name__},
            )
        return None

    def record(self, result: ExecutionResult, code: str) -> Optional[SyncOutcome]:
        """
        把一条执行结果写入文档。

        说明：
        - status=timeout 的结果不写入（请求仍 outstanding，最终结果由 `wait` 取回后再记录）

        返回：
        - SyncOutcome；timeout 时返回 None
        """

        if result.status == ExecutionStatus.TIMEOUT:
            return None

        cell_markers = parse_markers(result.stdout)
        cell_index = self.document.append_cell(
            code,
            stdout=result.stdout,
            stderr=result.stderr,
            exception_trace=result.exception_trace,
            metadata={
                "sequence_id": result.sequence_id,
                "status": result.status.value,
                "duration_ms": result.duration_ms,
                "truncated": result.truncated,
                "markers": [m.to_dict() for m in cell_markers],
            },
        )
        quality = self.quality_report()
        self.document.set_quality(quality)
        self.document.touch()
        self.document.add_run(
            RunRecord(
                run_id=f"run_{secrets.token_hex(6)}",
                sequence_id=result.sequence_id,
                status=result.status.value,
                started_at=_started_at(result.duration_ms),
                duration_ms=result.duration_ms,
                cell_index=cell_index,
            ),
            retention=self._config.run_retention,
        )
        self.document.save()
        return SyncOutcome(quality=quality, cell_index=cell_index, index_issue=self.refresh_index())
