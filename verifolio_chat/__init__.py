"""Verifolio Chat - tool-calling assistant service for Verifolio."""

__version__ = "0.1.0"

from verifolio_chat.config import Config

__all__ = ["Config", "__version__"]
