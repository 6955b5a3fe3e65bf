from __future__ import annotations

from pathlib import Path
import tomllib


def test_version_matches_pyproject() -> None:
    """
    版本一致性护栏：
    - `ama_daemon.__version__` 必须与 pyproject.toml 的 project.version 一致。
    """

    repo_root = Path(__file__).resolve().parents[1]
    data = tomllib.loads((repo_root / "pyproject.toml").read_text(encoding="utf-8"))

    expected = data["project"]["version"]

    from ama_daemon import __version__

    assert __version__ == expected
