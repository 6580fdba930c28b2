"""证据层：marker 解析与质量门禁。"""

from research_bridge.evidence.markers import MARKER_TYPES, Marker, join_outputs, markers_by_type, parse_markers
from research_bridge.evidence.quality_gates import (
    QualityGateResult,
    Violation,
    ViolationType,
    evaluate_markers,
    run_quality_gates,
)

__all__ = [
    "MARKER_TYPES",
    "Marker",
    "QualityGateResult",
    "Violation",
    "ViolationType",
    "evaluate_markers",
    "join_outputs",
    "markers_by_type",
    "parse_markers",
    "run_quality_gates",
]
