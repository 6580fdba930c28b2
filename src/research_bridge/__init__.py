"""
research-bridge：研究会话的持久化代码执行桥。

说明：
- 高层入口见 `research_bridge.api`（open_session / execute_code / get_quality_report ...）；
- 顶层包不导入第三方依赖（worker 进程会经由此包导入 `research_bridge.runtime.worker`）。
"""

__version__ = "0.1.0"
