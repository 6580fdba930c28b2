"""Notebook 持久化：nbformat 文档、执行结果同步、workspace index。"""
