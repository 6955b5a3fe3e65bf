"""`python -m ama_daemon` 入口（后台 daemon 也通过该入口启动）。"""

from __future__ import annotations

import sys

from ama_daemon.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
