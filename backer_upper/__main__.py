"""
Module entrypoint for the backer-upper CLI.

This file exists so that `python -m backer_upper ...` works when the
console-script wrapper is not installed. It contains no business logic.
"""

from __future__ import annotations

from backer_upper.cli import main


def _run() -> None:
    """Execute the CLI and exit with its return code."""
    raise SystemExit(main())


if __name__ == "__main__":
    _run()
