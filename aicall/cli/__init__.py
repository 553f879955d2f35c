"""
aicall.cli
==========

Typer application for the aicall command line. See aicall.cli.main.

    python -m aicall.cli --help
"""

from __future__ import annotations

from .main import app, main

__all__ = ["app", "main"]
