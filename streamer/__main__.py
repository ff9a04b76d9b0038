#!/usr/bin/env python3
"""
Entry point for the Cloudreel CLI.

Run with: python -m streamer
"""

from .cli import cli

if __name__ == '__main__':
    cli()
