"""
Bootstrap Layer（配置发现 / env 覆盖）。

设计目标：
- 保持核心模块无隐式 I/O：supervisor/synchronizer 只接收已校验的 `BridgeConfig`
- 提供可选 bootstrap 入口：facade 与 CLI 复用同一套发现规则
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from research_bridge.config.defaults import load_default_config_dict
from research_bridge.config.loader import BridgeConfig, load_config_dicts

ENV_CONFIG_PATHS = "RESEARCH_BRIDGE_CONFIG_PATHS"
ENV_RUNTIME_DIR = "RESEARCH_BRIDGE_RUNTIME_DIR"
ENV_INTERPRETER = "RESEARCH_BRIDGE_INTERPRETER"


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    读取 env 并返回非空白字符串（否则视为未设置）。

    参数：
    - key：环境变量名
    """

    v = (env if env is not None else os.environ).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（保序，去空项）。"""
    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def discover_overlay_paths(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现规则（固定，顺序稳定）：
    1) 默认 overlay：`<workspace_root>/config/research_bridge.yaml`
    2) `RESEARCH_BRIDGE_CONFIG_PATHS`（逗号/分号分隔；相对路径相对 workspace_root）
    """

    ws = Path(workspace_root).resolve()
    overlays: list[Path] = []

    default_overlay = (ws / "config" / "research_bridge.yaml").resolve()
    if default_overlay.exists():
        overlays.append(default_overlay)

    raw = _get_env_nonempty(ENV_CONFIG_PATHS, env=env) or ""
    for p in _split_paths(raw):
        pp = Path(p).expanduser()
        if not pp.is_absolute():
            pp = ws / pp
        overlays.append(pp.resolve())

    # 去重（按 canonical path；保序）
    seen: set[Path] = set()
    uniq: list[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """读取 overlay YAML 并确保根节点是 mapping(dict)。

    异常：
    - ValueError：文件不存在或 YAML 根节点不是 mapping。
    """
    if not path.exists():
        raise ValueError(f"overlay config not found: {path}")
    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"overlay config root must be a mapping(dict): {path}")
    return obj


def load_effective_config(
    *,
    workspace_root: Path,
    extra_overlays: Optional[list[Dict[str, Any]]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    """
    解析有效配置（embedded default < yaml overlays < env < extra_overlays）。

    参数：
    - workspace_root：工作区根目录（overlay 发现锚点）
    - extra_overlays：调用方显式传入的 dict overlays（优先级最高）
    - env：环境变量映射（默认 os.environ；测试可注入）
    """

    entries: list[Dict[str, Any]] = [load_default_config_dict()]
    for p in discover_overlay_paths(workspace_root=workspace_root, env=env):
        entries.append(_load_yaml_mapping(p))

    env_overlay: Dict[str, Any] = {}
    runtime_dir = _get_env_nonempty(ENV_RUNTIME_DIR, env=env)
    if runtime_dir:
        env_overlay.setdefault("runtime", {})["runtime_dir"] = runtime_dir
    interpreter = _get_env_nonempty(ENV_INTERPRETER, env=env)
    if interpreter:
        env_overlay.setdefault("worker", {})["interpreter"] = interpreter
    entries.append(env_overlay)

    entries.extend(extra_overlays or [])
    return load_config_dicts(entries)
