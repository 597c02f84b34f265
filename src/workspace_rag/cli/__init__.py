"""Command line interface (``wrag``)."""

from workspace_rag.cli.main import main

__all__ = ["main"]
