"""核心基础设施（错误分类 / 共享工具）。"""
