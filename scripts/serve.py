#!/usr/bin/env python3
from __future__ import annotations

import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


def main() -> int:
    from runbox.cli.serve import main as serve_main

    return serve_main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
