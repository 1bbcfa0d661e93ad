"""
Dependency Age Gate

A tool that fails the build when a locked dependency was released more
recently than the configured minimum age.
"""

__version__ = "0.1.0"

from .cli import main

__all__ = ["main"]
