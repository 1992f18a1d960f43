"""Quill - streaming generation backend for a conversational assistant."""

__version__ = "0.1.0"

from quill.config import Config

__all__ = ["Config", "__version__"]
