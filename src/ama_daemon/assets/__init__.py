"""内置资源（默认配置 YAML），通过 `importlib.resources` 随 package 分发。"""
