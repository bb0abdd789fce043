"""Command-line interface for Wellspring."""

from wellspring.cli.main import main

__all__ = ["main"]
