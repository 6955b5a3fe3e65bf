"""配置层：内置默认值（YAML）+ overlays 深度合并 + pydantic schema 校验。"""
