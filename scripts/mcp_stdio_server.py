#!/usr/bin/env python
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
# The worker is a child interpreter and needs the same import path.
os.environ["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC), os.environ.get("PYTHONPATH")]))

from bpy_mcp.__main__ import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main(["serve", "--transport", "stdio", *sys.argv[1:]]))
