"""Burrow - a local agentic assistant over a sandboxed notes directory."""

__version__ = "0.1.0"

from burrow.config import Config

__all__ = ["Config", "__version__"]
