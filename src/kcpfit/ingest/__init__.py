"""Utility modules for reading and writing kcpfit tables."""

from .traces import (
    TraceFileError,
    read_parameters,
    read_regions,
    read_segments,
    read_traces,
    read_xy,
    write_segments,
)

__all__ = [
    "TraceFileError",
    "read_traces",
    "read_regions",
    "read_parameters",
    "read_segments",
    "write_segments",
    "read_xy",
]
