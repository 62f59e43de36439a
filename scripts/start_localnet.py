#!/usr/bin/env python3
"""Bring up the local ROX validator network from a source checkout.

Equivalent to the ``rox-localnet`` console script; see
:mod:`rox_localnet.bootstrap` for the pipeline and its options.
"""

from __future__ import annotations

import sys
from pathlib import Path

repo_root = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(repo_root))

from rox_localnet.bootstrap import main  # noqa: E402


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
