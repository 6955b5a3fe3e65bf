"""基于 git plumbing 的影子仓库快照（track / patch / restore / diff / revert）。"""

from __future__ import annotations

from ama_daemon.snapshot.store import FileDiff, GitResult, SnapshotPatch, SnapshotStore

__all__ = ["FileDiff", "GitResult", "SnapshotPatch", "SnapshotStore"]
