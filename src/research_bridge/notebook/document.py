"""
Notebook 文档（Jupyter nbformat v4 + YAML frontmatter）。

文件结构：
- cell 0：raw cell，内容为 `---\\n<yaml>\\n---`（frontmatter，整体重写，不做原地 patch）；
- cell 1..n：按执行顺序追加的 code cell（只追加，不修改）；
- notebook metadata `research_bridge.quality_gate`：最近一次门禁结果（不作为 cell 出现）。

写入：
- 每次 `save()` 都把完整文档写入同目录临时文件再 `os.replace`，崩溃不会留下半截文件。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import nbformat
import yaml
from nbformat.v4 import new_code_cell, new_notebook, new_output, new_raw_cell
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from research_bridge.core.errors import MalformedMetadata
from research_bridge.core.utils import atomic_write_text, now_rfc3339

logger = logging.getLogger(__name__)

METADATA_KEY = "research_bridge"
_FENCE = "---"


def _parse_ts(value: str) -> datetime:
    """解析 RFC3339 时间戳（支持 `Z` 结尾；不带时区的值按 UTC 处理）。"""

    ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _ts_to_str(value: Any) -> Any:
    """YAML 会把未加引号的时间戳解析成 datetime；统一转回 RFC3339 字符串。"""

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat().replace("+00:00", "Z")
    return value


class RunRecord(BaseModel):
    """一次执行的摘要（frontmatter.runs 只保留最近 N 条）。"""

    model_config = ConfigDict(extra="forbid")

    run_id: str
    sequence_id: int
    status: str
    started_at: str
    duration_ms: int = 0
    cell_index: Optional[int] = None

    coerce_started_at = field_validator("started_at", mode="before")(_ts_to_str)


class Frontmatter(BaseModel):
    """
    notebook 的首个 metadata block。

    说明：
    - 允许额外字段（用户手写的键在重写时原样保留）；
    - `updated` 不得早于 `created`。
    """

    model_config = ConfigDict(extra="allow")

    schema_version: int = Field(default=1, ge=1)
    workspace: str
    slug: str = Field(min_length=1)
    status: Literal["active", "completed", "archived"] = "active"
    created: str
    updated: str
    tags: list[str] = Field(default_factory=list)
    runs: list[RunRecord] = Field(default_factory=list)

    coerce_timestamps = field_validator("created", "updated", mode="before")(_ts_to_str)

    @model_validator(mode="after")
    def _check_updated_after_created(self) -> "Frontmatter":
        """校验时间戳可解析且 updated ≥ created。"""

        if _parse_ts(self.updated) < _parse_ts(self.created):
            raise ValueError("frontmatter.updated must not be earlier than frontmatter.created")
        return self


def dump_frontmatter(fm: Frontmatter) -> str:
    """序列化为 `---\\n<yaml>---` 文本（raw cell 的 source）。"""

    body = yaml.safe_dump(fm.model_dump(mode="json"), sort_keys=False, allow_unicode=True)
    return f"{_FENCE}\n{body}{_FENCE}"


def parse_frontmatter(text: str) -> Frontmatter:
    """
    解析 frontmatter 文本。

    异常：
    - MalformedMetadata：缺少 `---` 包围、YAML 非法、根节点不是 mapping 或 schema 校验失败
    """

    s = str(text or "").strip()
    if not (s.startswith(_FENCE + "\n") and s.endswith("\n" + _FENCE)):
        raise MalformedMetadata("frontmatter must be fenced by '---' lines")
    body = s[len(_FENCE) + 1 : len(s) - len(_FENCE) - 1]
    try:
        obj = yaml.safe_load(body)
    except yaml.YAMLError as e:
        raise MalformedMetadata(f"frontmatter is not valid YAML: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedMetadata("frontmatter root must be a mapping")
    try:
        return Frontmatter.model_validate(obj)
    except (ValidationError, ValueError, TypeError) as e:
        raise MalformedMetadata(f"frontmatter failed validation: {e}") from e


def _error_output(trace: str) -> Any:
    """把 traceback 文本转换为 nbformat error output。"""

    lines = str(trace).rstrip("\n").split("\n")
    last = lines[-1] if lines else ""
    ename, _, evalue = last.partition(": ")
    return new_output("error", ename=ename or "Error", evalue=evalue, traceback=lines)


class NotebookDocument:
    """
    单个研究 notebook。

    说明：
    - 只有 session lock 的持有者会修改文档，因此没有文档级别的锁；
    - `frontmatter` 是可变对象，调用 `save()` 时整体写回 cell 0。
    """

    def __init__(self, path: Path, nb: Any, frontmatter: Frontmatter) -> None:
        """
        参数：
        - path：`.ipynb` 路径
        - nb：nbformat NotebookNode（cell 0 为 frontmatter）
        - frontmatter：已解析的 frontmatter
        """

        self.path = Path(path)
        self.notebook = nb
        self.frontmatter = frontmatter

    @classmethod
    def create(
        cls,
        path: Path,
        *,
        workspace: str,
        slug: str,
        tags: Optional[list[str]] = None,
        schema_version: int = 1,
    ) -> "NotebookDocument":
        """
        新建文档并立即落盘。

        异常：
        - FileExistsError：目标文件已存在（不覆盖已有文档）
        """

        p = Path(path)
        if p.exists():
            raise FileExistsError(f"notebook already exists: {p}")
        ts = now_rfc3339()
        fm = Frontmatter(
            schema_version=schema_version,
            workspace=str(workspace),
            slug=slug,
            created=ts,
            updated=ts,
            tags=list(tags or []),
        )
        nb = new_notebook()
        nb.metadata[METADATA_KEY] = {"schema_version": schema_version}
        nb.cells.append(new_raw_cell(dump_frontmatter(fm)))
        doc = cls(p, nb, fm)
        p.parent.mkdir(parents=True, exist_ok=True)
        doc.save()
        return doc

    @classmethod
    def load(cls, path: Path) -> "NotebookDocument":
        """
        读取已有文档。

        异常：
        - FileNotFoundError：文件不存在
        - MalformedMetadata：文件不是合法 notebook，或首个 cell 不是可解析的 frontmatter
        """

        p = Path(path)
        raw = p.read_bytes()
        try:
            nb = nbformat.reads(raw.decode("utf-8"), as_version=4)
        except Exception as e:  # 非 utf-8、非法 JSON、未知版本：nbformat 抛出多种异常
            raise MalformedMetadata(f"not a readable notebook: {p}", details={"path": str(p), "error": str(e)}) from e
        if not nb.cells or nb.cells[0].cell_type != "raw":
            raise MalformedMetadata("first cell must be a raw frontmatter cell", details={"path": str(p)})
        try:
            fm = parse_frontmatter(nb.cells[0].source)
        except MalformedMetadata as e:
            raise MalformedMetadata(e.message, details={"path": str(p)}) from e
        return cls(p, nb, fm)

    @property
    def code_cells(self) -> list[Any]:
        """frontmatter 之后的所有 code cell。"""

        return [c for c in self.notebook.cells[1:] if c.cell_type == "code"]

    def append_cell(
        self,
        code: str,
        *,
        stdout: str = "",
        stderr: str = "",
        exception_trace: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        追加一个 code cell（只追加，不修改已有 cell）。

        返回：
        - int：新 cell 在 notebook 中的下标
        """

        outputs = []
        if stdout:
            outputs.append(new_output("stream", name="stdout", text=stdout))
        if stderr:
            outputs.append(new_output("stream", name="stderr", text=stderr))
        if exception_trace:
            outputs.append(_error_output(exception_trace))
        cell = new_code_cell(
            source=code,
            execution_count=len(self.code_cells) + 1,
            outputs=outputs,
            metadata={METADATA_KEY: dict(metadata or {})},
        )
        self.notebook.cells.append(cell)
        return len(self.notebook.cells) - 1

    def output_history(self) -> list[str]:
        """按顺序返回每个 code cell 的 stdout（session 的完整输出历史）。"""

        out: list[str] = []
        for cell in self.code_cells:
            chunks = [
                str(o.get("text", ""))
                for o in cell.get("outputs", [])
                if o.get("output_type") == "stream" and o.get("name") == "stdout"
            ]
            out.append("".join(chunks))
        return out

    def add_run(self, record: RunRecord, *, retention: int) -> None:
        """追加 run record，超过 retention 时淘汰最旧的记录。"""

        runs = list(self.frontmatter.runs) + [record]
        self.frontmatter.runs = runs[-max(1, int(retention)) :]

    def touch(self) -> None:
        """刷新 `updated`（保证不早于 `created`）。"""

        ts = now_rfc3339()
        if _parse_ts(ts) < _parse_ts(self.frontmatter.created):
            ts = self.frontmatter.created
        self.frontmatter.updated = ts

    def set_quality(self, result: Any) -> None:
        """把门禁结果写入 notebook metadata（pydantic 模型或 dict）。"""

        data = result.model_dump(mode="json") if hasattr(result, "model_dump") else dict(result)
        self.notebook.metadata.setdefault(METADATA_KEY, {})["quality_gate"] = data

    def quality(self) -> Optional[Dict[str, Any]]:
        """读取已保存的门禁结果（没有则 None）。"""

        meta = self.notebook.metadata.get(METADATA_KEY) or {}
        q = meta.get("quality_gate")
        return dict(q) if isinstance(q, dict) else None

    def save(self) -> None:
        """把 frontmatter 写回 cell 0，并原子重写整个文件。"""

        self.notebook.cells[0].source = dump_frontmatter(self.frontmatter)
        atomic_write_text(self.path, nbformat.writes(self.notebook) + "\n")
        logger.debug("notebook saved: path=%s cells=%s", self.path, len(self.notebook.cells))
