"""Logging helpers for the project."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Tuple

DEFAULT_FORMAT = "%(levelname)s:%(name)s:%(message)s"
BLOCK_WIDTH = 75


def get_logger(name: str = "kcpfit", level: int | str = logging.INFO, fmt: str = DEFAULT_FORMAT) -> logging.Logger:
    """Return a configured :class:`logging.Logger` instance.

    A new ``StreamHandler`` is added only once per-logger to avoid
    duplicate log lines when calling this function multiple times.
    """

    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class LogBuilder:
    """Build the parameter block logged at the start of a batch run.

    The block consists of a starred title line followed by one aligned
    ``name : value`` line per parameter.  Time and package version are
    always listed first.
    """

    def __init__(self) -> None:
        self._parameters: List[Tuple[str, str]] = []
        self.new_parameter_list()

    @staticmethod
    def title_block(name: str) -> str:
        half = (BLOCK_WIDTH - len(name) - 2) // 2
        stars = "*" * max(half, 0)
        return f"{stars} {name} {stars}"

    @staticmethod
    def end_block(success: bool = True) -> str:
        return LogBuilder.title_block("Success" if success else "Failure")

    def new_parameter_list(self) -> None:
        from .. import __version__

        self._parameters.clear()
        self.add_parameter("Time", datetime.now().strftime("%a %b %d %H:%M:%S %Y"))
        self.add_parameter("Version", __version__)

    def add_parameter(self, name: str, value: object) -> None:
        self._parameters.append((name, str(value)))

    def parameter_list(self) -> str:
        if not self._parameters:
            return ""
        width = max(len(name) for name, _ in self._parameters) + 1
        return "\n".join(f"{name.ljust(width)}: {value}" for name, value in self._parameters)

    def build(self, name: str) -> str:
        """Return the title line followed by the parameter list."""

        return f"{self.title_block(name)}\n{self.parameter_list()}"
