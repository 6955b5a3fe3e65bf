"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 所有上限/超时均为“具名配置常量”，只有一个规范默认值（见 `assets/default.yaml`）。
"""

from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from ama_daemon.config.defaults import load_default_config_dict


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ServerConfig(BaseModel):
    """远端 agent 服务（WebSocket）连接配置。"""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(default="ws://localhost:3000")
    path: str = Field(default="/agent-streams")
    auth_failure_close_code: int = Field(default=1008)
    # 凭据刷新端点（可选；为空时 FileCredentialProvider.refresh_token 直接返回 False）
    refresh_url: Optional[str] = None

    @property
    def stream_url(self) -> str:
        """返回完整 WebSocket 地址（url + path）。"""

        return self.url.rstrip("/") + "/" + self.path.lstrip("/")


class ReconnectConfig(BaseModel):
    """
    重连退避策略。

    说明：
    - delay = min(initial * multiplier^attempt, max) ± jitter_ratio * delay
    """

    model_config = ConfigDict(extra="forbid")

    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=60000, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter_ratio: float = Field(default=0.25, ge=0.0, le=1.0)


class TimeoutsConfig(BaseModel):
    """per-tool / per-method 超时表（毫秒）。"""

    model_config = ConfigDict(extra="forbid")

    default_ms: int = Field(default=30000, ge=1)
    tools: Dict[str, int] = Field(default_factory=dict)
    rpc_default_ms: int = Field(default=30000, ge=1)
    rpc: Dict[str, int] = Field(default_factory=dict)

    def for_tool(self, tool: str) -> int:
        """返回工具的超时预算（未配置时使用 default_ms）。"""

        return int(self.tools.get(tool, self.default_ms))

    def for_method(self, method: str) -> int:
        """返回 RPC 方法的超时预算（未配置时使用 rpc_default_ms）。"""

        return int(self.rpc.get(method, self.rpc_default_ms))


class BatchConfig(BaseModel):
    """batch 执行器上限。"""

    model_config = ConfigDict(extra="forbid")

    max_calls: int = Field(default=25, ge=1)
    max_concurrency: int = Field(default=5, ge=1)
    per_call_timeout_ms: int = Field(default=30000, ge=1)


class GrepConfig(BaseModel):
    """grep 工具上限（匹配数/输出字节/单行长度/超时/默认排除 glob）。"""

    model_config = ConfigDict(extra="forbid")

    max_matches: int = Field(default=200, ge=1)
    max_output_bytes: int = Field(default=1024 * 1024, ge=1)
    max_line_chars: int = Field(default=500, ge=1)
    timeout_ms: int = Field(default=15000, ge=1)
    exclude_globs: List[str] = Field(default_factory=list)


class GlobConfig(BaseModel):
    """glob 工具上限。"""

    model_config = ConfigDict(extra="forbid")

    result_limit: int = Field(default=100, ge=1)


class ListDirectoryConfig(BaseModel):
    """listDirectory 工具上限与默认忽略集合。"""

    model_config = ConfigDict(extra="forbid")

    result_limit: int = Field(default=500, ge=1)
    default_max_depth: int = Field(default=3, ge=1)
    ignore: List[str] = Field(default_factory=list)


class ReadFileConfig(BaseModel):
    """readFile 工具上限。"""

    model_config = ConfigDict(extra="forbid")

    max_file_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    max_lines: int = Field(default=10000, ge=1)


class TerminalConfig(BaseModel):
    """runTerminalCommand 工具上限。"""

    model_config = ConfigDict(extra="forbid")

    timeout_ms: int = Field(default=30000, ge=1)
    max_output_bytes: int = Field(default=1024 * 1024, ge=1)


class ContextConfig(BaseModel):
    """get_context RPC 的文件清单上限与忽略集合。"""

    model_config = ConfigDict(extra="forbid")

    max_files: int = Field(default=20000, ge=1)
    ignore: List[str] = Field(default_factory=list)


class PathsConfig(BaseModel):
    """应用数据目录（projects.json / snapshot / pid / log 均位于其下）。"""

    model_config = ConfigDict(extra="forbid")

    data_dir: str = Field(default="~/.ama")

    def resolved_data_dir(self) -> Path:
        """返回展开 `~` 后的绝对数据目录。"""

        return Path(self.data_dir).expanduser().resolve()


class LoggingConfig(BaseModel):
    """日志配置（stdlib logging）。"""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


class DaemonConfig(BaseModel):
    """AMA Daemon 配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1)
    server: ServerConfig = Field(default_factory=ServerConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    grep: GrepConfig = Field(default_factory=GrepConfig)
    glob: GlobConfig = Field(default_factory=GlobConfig)
    list_directory: ListDirectoryConfig = Field(default_factory=ListDirectoryConfig)
    read_file: ReadFileConfig = Field(default_factory=ReadFileConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# 环境变量覆盖：env key -> 配置路径（点分）
ENV_OVERRIDES: Dict[str, str] = {
    "AMA_SERVER_URL": "server.url",
    "AMA_DATA_DIR": "paths.data_dir",
    "AMA_LOG_LEVEL": "logging.level",
}


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件并确保根节点为 mapping。"""

    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return obj


def _env_overlay(env: Mapping[str, str]) -> Dict[str, Any]:
    """把 `ENV_OVERRIDES` 中出现的环境变量投影为 overlay dict（空字符串视为未设置）。"""

    overlay: Dict[str, Any] = {}
    for key, dotted in ENV_OVERRIDES.items():
        value = str(env.get(key) or "").strip()
        if not value:
            continue
        node = overlay
        parts = dotted.split(".")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value.upper() if dotted == "logging.level" else value
    return overlay


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> DaemonConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `DaemonConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return DaemonConfig.model_validate(merged)


def load_config(
    overlay_paths: Optional[list[Path]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> DaemonConfig:
    """
    加载有效配置：内置默认值 + YAML overlays + 环境变量覆盖。

    参数：
    - overlay_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - env：环境变量映射（默认 `os.environ`；测试可注入）

    异常：
    - pydantic.ValidationError：schema 校验失败（含未知字段）
    - ValueError：overlay 根节点不是 mapping
    """

    overlays: list[Dict[str, Any]] = [load_default_config_dict()]
    for path in overlay_paths or []:
        overlays.append(_load_yaml_file(Path(path)))
    overlays.append(_env_overlay(os.environ if env is None else env))
    return load_config_dicts(overlays)
