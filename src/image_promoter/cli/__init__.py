"""
CLI layer for image-promoter.

A Typer application whose commands each run one ``Promoter`` mode. All
promotion logic lives in ``image_promoter.modes``; this package handles
argument parsing, coloured output and exit codes.

Entry point::

    image-promoter --help
"""

from image_promoter.cli.app import app

__all__ = ["app"]
