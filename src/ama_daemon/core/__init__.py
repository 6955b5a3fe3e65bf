"""核心公共类型：错误分类与通用工具函数。"""
