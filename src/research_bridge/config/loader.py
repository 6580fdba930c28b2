"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 默认值来自 `research_bridge/assets/default.yaml`（见 `config.defaults`）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class BridgeRuntimeConfig(BaseModel):
    """
    runtime 目录与 session lock 参数。

    说明：
    - `runtime_dir` 为空时按环境推导（见 `runtime.paths.resolve_runtime_dir`）；
    - lock 的存活判定基于 heartbeat 时间戳：超过 `lock_stale_after_ms` 未刷新即视为 owner 失活。
    """

    model_config = ConfigDict(extra="forbid")

    runtime_dir: Optional[str] = None
    lock_heartbeat_interval_ms: int = Field(default=1000, ge=10)
    lock_stale_after_ms: int = Field(default=10_000, ge=100)

    @model_validator(mode="after")
    def _check_heartbeat_below_stale(self) -> "BridgeRuntimeConfig":
        """heartbeat 间隔必须小于 stale 阈值，否则存活的 owner 会被误判为 stale。"""

        if self.lock_heartbeat_interval_ms >= self.lock_stale_after_ms:
            raise ValueError("runtime.lock_heartbeat_interval_ms must be < runtime.lock_stale_after_ms")
        return self


class BridgeWorkerConfig(BaseModel):
    """worker 进程参数（解释器 / 握手 / 关闭宽限期 / 额外 env）。"""

    model_config = ConfigDict(extra="forbid")

    interpreter: Optional[str] = None
    handshake_timeout_ms: int = Field(default=10_000, ge=100)
    shutdown_grace_ms: int = Field(default=2000, ge=0)
    env: Dict[str, str] = Field(default_factory=dict)


class BridgeExecutionConfig(BaseModel):
    """执行参数（默认超时 / 单次输出上限）。"""

    model_config = ConfigDict(extra="forbid")

    default_timeout_ms: int = Field(default=300_000, ge=1)
    max_output_bytes: int = Field(default=1024 * 1024, ge=0)


class BridgeTransportConfig(BaseModel):
    """传输层参数（帧大小上限 / heartbeat 往返超时）。"""

    model_config = ConfigDict(extra="forbid")

    max_frame_bytes: int = Field(default=16 * 1024 * 1024, ge=1024)
    heartbeat_timeout_ms: int = Field(default=2000, ge=1)


class BridgeNotebookConfig(BaseModel):
    """notebook 同步参数。"""

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=1, ge=1)
    run_retention: int = Field(default=10, ge=1)
    index_filename: str = Field(default="README.md", min_length=1)


class BridgeConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    runtime: BridgeRuntimeConfig = Field(default_factory=BridgeRuntimeConfig)
    worker: BridgeWorkerConfig = Field(default_factory=BridgeWorkerConfig)
    execution: BridgeExecutionConfig = Field(default_factory=BridgeExecutionConfig)
    transport: BridgeTransportConfig = Field(default_factory=BridgeTransportConfig)
    notebook: BridgeNotebookConfig = Field(default_factory=BridgeNotebookConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> BridgeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `BridgeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return BridgeConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> BridgeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `BridgeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
