# src/kcpfit/ingest/traces.py
"""CSV loaders and writers for molecule traces and segment tables.

Traces are read from *long format* tables: one row per sample with a
molecule identifier column and one column per measured quantity, e.g.::

    molecule,T,Position
    m1,0,0.1
    m1,1,0.3
    m2,0,1.2

Regions are read from a table with ``molecule,name,start,end`` rows and
molecule parameters (such as a precomputed ``Position_sigma``) from
``molecule,name,value`` rows.  Segment tables use the standard segment
columns with a leading ``UID`` column when several molecules are pooled.
"""

from __future__ import annotations

import pathlib
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..core.tables import Molecule, MoleculeArchive, split_by_uid
from ..types import SEGMENT_COLUMNS, UID_COLUMN, Region

PathLike = Union[str, pathlib.Path]


class TraceFileError(ValueError):
    """Raised when an input table lacks required columns or values."""

    def __init__(self, message: str, *, path: PathLike):
        self.path = str(path)
        super().__init__(f"{self.path}: {message}")


def _read_csv(path: PathLike, required: Sequence[str]) -> pd.DataFrame:
    frame = pd.read_csv(path)
    frame.columns = [str(c).strip().lstrip("\ufeff") for c in frame.columns]
    missing = [c for c in required if c not in frame.columns]
    if missing:
        raise TraceFileError(f"missing column(s) {', '.join(missing)}", path=path)
    return frame


def read_traces(
    path: PathLike,
    uid_column: str = "molecule",
    *,
    name: Optional[str] = None,
    tag_column: Optional[str] = None,
) -> MoleculeArchive:
    """Load a long-format trace table into a :class:`MoleculeArchive`.

    Rows keep their file order within each molecule.  When ``tag_column`` is
    given its comma-separated values become the molecule tags.
    """

    frame = _read_csv(path, [uid_column])
    archive = MoleculeArchive(name or pathlib.Path(path).stem)
    for uid, group in frame.groupby(uid_column, sort=False):
        tags = set()
        if tag_column is not None and tag_column in group.columns:
            for cell in group[tag_column].dropna().astype(str):
                tags.update(t.strip() for t in cell.split(",") if t.strip())
        data = group.drop(columns=[c for c in (uid_column, tag_column) if c in group.columns])
        archive.put(Molecule(uid=str(uid), data=data.reset_index(drop=True), tags=tags))
    return archive


def read_regions(path: PathLike, archive: MoleculeArchive, uid_column: str = "molecule") -> int:
    """Attach ``name -> Region`` entries to molecules of ``archive``.

    Returns the number of regions attached.  Rows for unknown molecules are
    ignored.
    """

    frame = _read_csv(path, [uid_column, "name", "start", "end"])
    count = 0
    for uid, name, start, end in zip(frame[uid_column], frame["name"], frame["start"], frame["end"]):
        uid = str(uid)
        if uid not in archive:
            continue
        archive.get(uid).regions[str(name)] = Region(float(start), float(end))
        count += 1
    return count


def read_parameters(path: PathLike, archive: MoleculeArchive, uid_column: str = "molecule") -> int:
    """Attach numeric ``name -> value`` parameters to molecules of ``archive``."""

    frame = _read_csv(path, [uid_column, "name", "value"])
    count = 0
    for uid, name, value in zip(frame[uid_column], frame["name"], frame["value"]):
        uid = str(uid)
        if uid not in archive:
            continue
        archive.get(uid).parameters[str(name)] = float(value)
        count += 1
    return count


def read_segments(path: PathLike) -> Dict[str, pd.DataFrame]:
    """Read a pooled segment table and split it per molecule."""

    frame = _read_csv(path, [UID_COLUMN, *SEGMENT_COLUMNS])
    frame[UID_COLUMN] = frame[UID_COLUMN].astype(str)
    return split_by_uid(frame)


def write_segments(tables: Mapping[str, pd.DataFrame], path: PathLike) -> pathlib.Path:
    """Write ``uid -> segments table`` as one pooled CSV file."""

    out = pathlib.Path(path)
    frames = [t[list(SEGMENT_COLUMNS)].assign(**{UID_COLUMN: uid}) for uid, t in tables.items()]
    if frames:
        pooled = pd.concat(frames, ignore_index=True)[[UID_COLUMN, *SEGMENT_COLUMNS]]
    else:
        pooled = pd.DataFrame(columns=[UID_COLUMN, *SEGMENT_COLUMNS])
    pooled.to_csv(out, index=False)
    return out


def read_xy(
    path: PathLike,
    x_columns: Sequence[str],
    y_column: str,
    sigma_column: Optional[str] = None,
) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray]]:
    """Return ``(x, y, sigma)`` arrays for curve or surface fitting.

    ``x`` has one column per entry of ``x_columns``.  Rows with a NaN in any
    used column are dropped.
    """

    used = [*x_columns, y_column] + ([sigma_column] if sigma_column else [])
    frame = _read_csv(path, used)[used].dropna()
    if frame.empty:
        raise TraceFileError("no complete rows", path=path)
    x = frame[list(x_columns)].to_numpy(dtype=float)
    y = frame[y_column].to_numpy(dtype=float)
    sigma = frame[sigma_column].to_numpy(dtype=float) if sigma_column else None
    return x, y, sigma


__all__ = [
    "TraceFileError",
    "read_traces",
    "read_regions",
    "read_parameters",
    "read_segments",
    "write_segments",
    "read_xy",
]
