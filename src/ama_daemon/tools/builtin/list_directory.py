"""
内置工具：listDirectory（深度受限、结果受限的目录遍历）。

说明：
- 使用显式栈做迭代遍历（不递归），便于控制深度与结果上限。
- 默认跳过隐藏条目与 `list_directory.ignore` 中的目录/文件名；`useDefaultIgnore=false` 时只用调用方的 ignore。
- 不跟随 symlink 目录。
- 输出：结构化 files 列表 + 树形文本（目录在前，字母序）。
"""

from __future__ import annotations

import asyncio
import fnmatch
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ama_daemon.core.errors import ErrorCode
from ama_daemon.tools.protocol import ToolName, ToolSpec, error_result, ok_result
from ama_daemon.tools.registry import ToolContext


class _ListDirectoryArgs(BaseModel):
    """listDirectory 输入参数。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    path: Optional[str] = None
    recursive: bool = True
    max_depth: Optional[int] = Field(default=None, alias="maxDepth")
    pattern: Optional[str] = None
    show_hidden: bool = Field(default=False, alias="showHidden")
    include_metadata: bool = Field(default=False, alias="includeMetadata")
    ignore: List[str] = Field(default_factory=list)
    use_default_ignore: bool = Field(default=True, alias="useDefaultIgnore")


LIST_DIRECTORY_SPEC = ToolSpec(
    name=ToolName.LIST_DIRECTORY,
    description="List a directory tree (depth-bounded, result-capped, common build/dependency folders ignored).",
)


@dataclass
class _Entry:
    """目录条目。"""

    name: str
    rel_path: str
    type: str  # file|directory
    depth: int
    abs_path: str = field(repr=False, default="")

    def to_dict(self, include_metadata: bool) -> Dict[str, Any]:
        """转成 JSONable dict（可选附带 mtime/size）。"""

        out: Dict[str, Any] = {"name": self.name, "path": self.rel_path, "type": self.type}
        if include_metadata:
            try:
                st = os.stat(self.abs_path)
                out["mtime"] = int(st.st_mtime * 1000)
                out["size"] = st.st_size
            except OSError:
                out["mtime"] = 0
                out["size"] = 0
        return out


def _match_pattern(name: str, pattern: Optional[str]) -> bool:
    """文件名过滤：`.ext` 形式按后缀匹配，否则按大小写不敏感的 glob 匹配。"""

    if not pattern:
        return True
    if pattern.startswith(".") and "*" not in pattern:
        return name.endswith(pattern)
    return fnmatch.fnmatch(name.lower(), pattern.lower())


def _walk(
    root: Path,
    *,
    recursive: bool,
    max_depth: int,
    pattern: Optional[str],
    show_hidden: bool,
    ignore: Set[str],
    limit: int,
) -> Tuple[List[_Entry], bool]:
    """
    显式栈遍历。

    返回：
    - (entries, truncated)
    """

    collected: List[_Entry] = []
    truncated = False
    stack: List[Tuple[Path, int]] = [(root, 0)]
    while stack:
        current, depth = stack.pop()
        try:
            with os.scandir(current) as it:
                children = list(it)
        except OSError:
            continue
        children.sort(key=lambda e: (not e.is_dir(follow_symlinks=False), e.name.lower()))

        subdirs: List[Tuple[Path, int]] = []
        for child in children:
            if len(collected) >= limit:
                truncated = True
                break
            if (not show_hidden and child.name.startswith(".")) or child.name in ignore:
                continue
            rel = os.path.relpath(child.path, root).replace(os.sep, "/")
            if child.is_dir(follow_symlinks=False):
                collected.append(_Entry(name=child.name, rel_path=rel, type="directory", depth=depth, abs_path=child.path))
                if recursive and depth < max_depth:
                    subdirs.append((Path(child.path), depth + 1))
            elif child.is_file() and _match_pattern(child.name, pattern):
                collected.append(_Entry(name=child.name, rel_path=rel, type="file", depth=depth, abs_path=child.path))
        if truncated:
            break
        # 逆序入栈：保证字母序靠前的目录先展开
        stack.extend(reversed(subdirs))
    return collected, truncated


def _render_tree(entries: List[_Entry], base: str) -> str:
    """把条目渲染为树形文本（目录在前，字母序；显式栈迭代）。"""

    children: Dict[str, List[_Entry]] = {}
    for entry in entries:
        parent = entry.rel_path.rsplit("/", 1)[0] if "/" in entry.rel_path else ""
        children.setdefault(parent, []).append(entry)
    for items in children.values():
        items.sort(key=lambda e: (e.type != "directory", e.name.lower()))

    lines = [f"{base}/"]
    # (条目, 缩进, 是否为同级最后一个)；逆序压栈保证按顺序弹出
    pending: List[Tuple[_Entry, str, bool]] = []

    def _push_children(dir_key: str, indent: str) -> None:
        """把某目录的子条目压栈。"""

        kids = children.get(dir_key, [])
        for j in range(len(kids) - 1, -1, -1):
            pending.append((kids[j], indent, j == len(kids) - 1))

    _push_children("", "")
    while pending:
        item, indent, is_last = pending.pop()
        prefix = "└── " if is_last else "├── "
        if item.type == "directory":
            lines.append(f"{indent}{prefix}{item.name}/")
            _push_children(item.rel_path, indent + ("    " if is_last else "│   "))
        else:
            lines.append(f"{indent}{prefix}{item.name}")
    return "\n".join(lines)


async def list_directory(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """执行 listDirectory。"""

    a = _ListDirectoryArgs.model_validate(args)
    limits = ctx.config.list_directory
    max_depth = limits.default_max_depth if a.max_depth is None else a.max_depth
    if max_depth < 0:
        return error_result(ErrorCode.INVALID_MAX_DEPTH, "maxDepth must be a non-negative integer")

    validation = ctx.validate(a.path or ".")
    if not validation.valid or validation.resolved_path is None:
        return error_result(ErrorCode.ACCESS_DENIED, validation.error or "Path validation failed")
    root = validation.resolved_path
    if not root.exists():
        return error_result(ErrorCode.DIR_NOT_FOUND, f"Directory not found: {a.path or '.'}")
    if not root.is_dir():
        return error_result(ErrorCode.NOT_A_DIRECTORY, f"Path is not a directory: {a.path}")

    ignore: Set[str] = set(limits.ignore) if a.use_default_ignore else set()
    ignore.update(a.ignore)
    try:
        entries, truncated = await asyncio.to_thread(
            _walk,
            root,
            recursive=a.recursive,
            max_depth=max_depth,
            pattern=a.pattern,
            show_hidden=a.show_hidden,
            ignore=ignore,
            limit=limits.result_limit,
        )
    except OSError as exc:
        return error_result(ErrorCode.LIST_ERROR, f"Failed to list directory: {exc}")

    total_files = sum(1 for e in entries if e.type == "file")
    total_dirs = len(entries) - total_files
    message = f"Listed {len(entries)} items"
    if a.path:
        message += f' in "{a.path}"'
    message += f" ({total_files} files, {total_dirs} directories)"
    if a.recursive:
        message += f" [depth: {max_depth}]"
    if a.pattern:
        message += f" [filter: {a.pattern}]"
    if truncated:
        message += f" [TRUNCATED at {limits.result_limit} items]"

    return ok_result(
        message,
        metadata={
            "totalFiles": total_files,
            "totalDirectories": total_dirs,
            "totalItems": len(entries),
            "truncated": truncated,
            "maxDepth": max_depth,
            "recursive": a.recursive,
        },
        files=[e.to_dict(a.include_metadata) for e in entries],
        content=_render_tree(entries, a.path or root.name),
    )
