"""配置模块（YAML + pydantic 校验）。"""

from research_bridge.config.loader import BridgeConfig, load_config, load_config_dicts

__all__ = ["BridgeConfig", "load_config", "load_config_dicts"]
