from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict

import pytest

from research_bridge.config.defaults import load_default_config_dict
from research_bridge.config.loader import BridgeConfig, load_config_dicts


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., BridgeConfig]:
    """
    构造测试用配置：内置默认值 + runtime 目录指向 tmp_path。

    用法：
    - `make_config()` 或 `make_config({"execution": {"max_output_bytes": 10}})`
    """

    def _make(overlay: Dict[str, Any] | None = None) -> BridgeConfig:
        """合并默认值、测试 runtime 目录与调用方 overlay。"""

        base = {
            "runtime": {"runtime_dir": str(tmp_path / "rt")},
            "worker": {"handshake_timeout_ms": 30_000, "shutdown_grace_ms": 1000},
        }
        return load_config_dicts([load_default_config_dict(), base, overlay or {}])

    return _make
