"""
Bridge runtime（session lock / supervisor ↔ worker 传输 / 进程生命周期）。

说明：
- 本包的 `__init__` 不做任何 re-export：`research_bridge.runtime.worker` 运行在用户指定的解释器中，
  导入链上只能出现标准库模块。
"""
