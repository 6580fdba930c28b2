"""
质量门禁（Quality Gates）。

规则：
1) Finding gating：每个 `[FINDING]` 之前 10 行内（窗口 `[max(1, L-10), L)`）必须有 `[STAT:ci]`，
   且必须有 `[STAT:effect_size]`；缺失各扣 30 分。
2) ML pipeline gating：仅当某个 `[METRIC:*]` 的 subtype 包含 ML 指标词（accuracy/precision/...）时触发，
   要求存在 `baseline*`（缺失扣 20）、`cv*`（缺失扣 25）、以及可解释性 subtype（缺失扣 15）。

说明：
- score = max(0, 100 - Σpenalty)；passed 当且仅当没有任何 violation（与分数无关）；
- 每次都对完整 marker 历史重新计算，不保存增量状态；violation 是数据，不是异常。
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Sequence

from pydantic import BaseModel, ConfigDict

from research_bridge.evidence.markers import Marker, markers_by_type, parse_markers

LOOKBACK_LINES = 10

ML_METRIC_KEYWORDS = ("accuracy", "precision", "recall", "f1", "auc", "rmse", "mae", "r2", "mse")
INTERPRETATION_SUBTYPES = (
    "feature_importance",
    "top_features",
    "shap",
    "permutation_importance",
    "interpretation",
)


class ViolationType(str, Enum):
    """violation 类型（稳定字符串，写入 notebook metadata）。"""

    FINDING_NO_CI = "FINDING_NO_CI"
    FINDING_NO_EFFECT_SIZE = "FINDING_NO_EFFECT_SIZE"
    ML_NO_BASELINE = "ML_NO_BASELINE"
    ML_NO_CV = "ML_NO_CV"
    ML_NO_INTERPRETATION = "ML_NO_INTERPRETATION"


PENALTIES = {
    ViolationType.FINDING_NO_CI: 30,
    ViolationType.FINDING_NO_EFFECT_SIZE: 30,
    ViolationType.ML_NO_BASELINE: 20,
    ViolationType.ML_NO_CV: 25,
    ViolationType.ML_NO_INTERPRETATION: 15,
}


class Violation(BaseModel):
    """单条违规（ML 类违规不对应具体行：line_number=0，content 为空）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: ViolationType
    message: str
    line_number: int
    content: str
    penalty: int


class FindingValidation(BaseModel):
    """finding 统计。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    total: int = 0
    verified: int = 0
    unverified: int = 0


class MLPipelineValidation(BaseModel):
    """ML pipeline 要素是否齐全。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    has_baseline: bool = False
    has_cv: bool = False
    has_interpretation: bool = False


class QualityGateResult(BaseModel):
    """一次门禁评估的完整结果（派生数据，随时可重算）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    passed: bool
    violations: list[Violation]
    score: int
    findings_validation: FindingValidation
    ml_validation: MLPipelineValidation


def _has_stat_before(markers: Sequence[Marker], target_line: int, subtype: str) -> bool:
    """窗口 `[max(1, target-10), target)` 内是否有指定 subtype 的 STAT marker。"""

    min_line = max(1, target_line - LOOKBACK_LINES)
    return any(
        m.type == "STAT" and m.subtype == subtype and min_line <= m.line_number < target_line for m in markers
    )


def _violation(vtype: ViolationType, message: str, *, line_number: int = 0, content: str = "") -> Violation:
    """按类型构造 violation（penalty 取固定表）。"""

    return Violation(type=vtype, message=message, line_number=line_number, content=content, penalty=PENALTIES[vtype])


def validate_findings(markers: Sequence[Marker]) -> tuple[list[Violation], FindingValidation]:
    """
    校验每个 FINDING 之前是否有置信区间与效应量证据。

    返回：
    - (violations, FindingValidation)
    """

    violations: list[Violation] = []
    verified = 0
    findings = markers_by_type(markers, "FINDING")
    for finding in findings:
        ok = True
        for subtype, vtype in (("ci", ViolationType.FINDING_NO_CI), ("effect_size", ViolationType.FINDING_NO_EFFECT_SIZE)):
            if _has_stat_before(markers, finding.line_number, subtype):
                continue
            ok = False
            violations.append(
                _violation(
                    vtype,
                    f"Finding at line {finding.line_number} missing [STAT:{subtype}] "
                    f"within preceding {LOOKBACK_LINES} lines",
                    line_number=finding.line_number,
                    content=finding.content,
                )
            )
        if ok:
            verified += 1
    return violations, FindingValidation(total=len(findings), verified=verified, unverified=len(findings) - verified)


def validate_ml_pipeline(markers: Sequence[Marker]) -> tuple[list[Violation], MLPipelineValidation]:
    """
    校验 ML pipeline 是否包含 baseline / 交叉验证 / 可解释性指标。

    说明：
    - 只有出现 ML 指标（subtype 子串匹配）时才会产生 violation；三个布尔值总是如实报告。
    """

    subtypes = [m.subtype for m in markers if m.type == "METRIC" and m.subtype]
    has_baseline = any(s.startswith("baseline") for s in subtypes)
    has_cv = any(s.startswith("cv") for s in subtypes)
    has_interpretation = any(
        interp in s or interp in s.lower() for s in subtypes for interp in INTERPRETATION_SUBTYPES
    )
    has_ml_metrics = any(kw in s for s in subtypes for kw in ML_METRIC_KEYWORDS)

    violations: list[Violation] = []
    if has_ml_metrics:
        if not has_baseline:
            violations.append(
                _violation(ViolationType.ML_NO_BASELINE, "ML pipeline missing baseline comparison ([METRIC:baseline_*])")
            )
        if not has_cv:
            violations.append(
                _violation(ViolationType.ML_NO_CV, "ML pipeline missing cross-validation metrics ([METRIC:cv_*])")
            )
        if not has_interpretation:
            violations.append(
                _violation(
                    ViolationType.ML_NO_INTERPRETATION,
                    "ML pipeline missing interpretation ([METRIC:feature_importance], SHAP, etc.)",
                )
            )
    return violations, MLPipelineValidation(
        has_baseline=has_baseline,
        has_cv=has_cv,
        has_interpretation=has_interpretation,
    )


def evaluate_markers(markers: Iterable[Marker]) -> QualityGateResult:
    """
    对完整 marker 历史运行全部门禁。

    参数：
    - markers：按行号排序的 marker（通常来自 `parse_markers(join_outputs(...))`）
    """

    ms = list(markers)
    finding_violations, findings_validation = validate_findings(ms)
    ml_violations, ml_validation = validate_ml_pipeline(ms)
    violations = finding_violations + ml_violations
    score = max(0, 100 - sum(v.penalty for v in violations))
    return QualityGateResult(
        passed=not violations,
        violations=violations,
        score=score,
        findings_validation=findings_validation,
        ml_validation=ml_validation,
    )


def run_quality_gates(text: str) -> QualityGateResult:
    """解析文本并运行全部门禁。"""

    return evaluate_markers(parse_markers(text))
