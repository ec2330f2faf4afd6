"""Small helpers shared by the command line and batch layers."""

from .logging import LogBuilder, get_logger

__all__ = ["LogBuilder", "get_logger"]
