#!/usr/bin/env python3

"""Run tunnel-ingress from a source checkout without installing it."""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from tunnel_ingress.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
