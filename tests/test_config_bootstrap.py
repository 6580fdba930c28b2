from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from research_bridge.bootstrap import (
    ENV_CONFIG_PATHS,
    ENV_INTERPRETER,
    ENV_RUNTIME_DIR,
    discover_overlay_paths,
    load_effective_config,
)
from research_bridge.config.loader import load_config, load_config_dicts


def test_defaults_load_without_overlays(tmp_path: Path) -> None:
    cfg = load_effective_config(workspace_root=tmp_path, env={})

    assert cfg.config_version == 1
    assert cfg.runtime.runtime_dir is None
    assert cfg.runtime.lock_stale_after_ms == 10_000
    assert cfg.execution.default_timeout_ms == 300_000
    assert cfg.notebook.run_retention == 10
    assert cfg.notebook.index_filename == "README.md"


def test_overlay_precedence(tmp_path: Path) -> None:
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "research_bridge.yaml").write_text(
        "execution:\n  default_timeout_ms: 5000\nnotebook:\n  run_retention: 3\n", encoding="utf-8"
    )
    (tmp_path / "extra.yaml").write_text("execution:\n  default_timeout_ms: 7000\n", encoding="utf-8")
    env = {
        ENV_CONFIG_PATHS: "extra.yaml",
        ENV_RUNTIME_DIR: str(tmp_path / "rt"),
        ENV_INTERPRETER: "/opt/py/bin/python",
    }

    cfg = load_effective_config(
        workspace_root=tmp_path,
        env=env,
        extra_overlays=[{"notebook": {"run_retention": 4}}],
    )

    assert cfg.execution.default_timeout_ms == 7000
    assert cfg.notebook.run_retention == 4
    assert cfg.runtime.runtime_dir == str(tmp_path / "rt")
    assert cfg.worker.interpreter == "/opt/py/bin/python"
    # 未覆盖的字段保持默认值
    assert cfg.execution.max_output_bytes == 1024 * 1024


def test_discover_overlay_paths_dedupes_and_resolves(tmp_path: Path) -> None:
    (tmp_path / "config").mkdir()
    default = tmp_path / "config" / "research_bridge.yaml"
    default.write_text("{}\n", encoding="utf-8")

    paths = discover_overlay_paths(
        workspace_root=tmp_path,
        env={ENV_CONFIG_PATHS: "config/research_bridge.yaml; other.yaml"},
    )
    assert paths == [default.resolve(), (tmp_path / "other.yaml").resolve()]


def test_missing_overlay_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        load_effective_config(workspace_root=tmp_path, env={ENV_CONFIG_PATHS: "nope.yaml"})


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"execution": {"default_timeout": 1}}])


def test_heartbeat_must_be_below_stale_threshold() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"runtime": {"lock_heartbeat_interval_ms": 5000, "lock_stale_after_ms": 5000}}])


def test_load_config_merges_files_in_order(tmp_path: Path) -> None:
    a = tmp_path / "a.yaml"
    b = tmp_path / "b.yaml"
    a.write_text("worker:\n  env:\n    A: '1'\n  shutdown_grace_ms: 10\n", encoding="utf-8")
    b.write_text("worker:\n  env:\n    B: '2'\n", encoding="utf-8")

    cfg = load_config([a, b])
    assert cfg.worker.env == {"A": "1", "B": "2"}
    assert cfg.worker.shutdown_grace_ms == 10

    with pytest.raises(FileNotFoundError):
        load_config([tmp_path / "missing.yaml"])
