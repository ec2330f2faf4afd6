"""Simple in-memory tables used by the project.

Molecule traces, their regions and their segment tables normally live in a
molecule archive managed by a host application.  The change-point search
only needs a very small subset of that functionality, therefore the archive
is materialised completely in memory using Python data structures and
:class:`pandas.DataFrame` tables.

Two kinds of tables are modelled:

``data``
    The per-molecule sample table with one column per measured quantity.

``segments``
    Output of the change-point search, keyed by ``(x_column, y_column,
    region)``.  Columns follow :data:`~kcpfit.types.SEGMENT_COLUMNS` so that
    tables written by other tools stay compatible.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import numpy as np
import pandas as pd

from ..types import SEGMENT_COLUMNS, UID_COLUMN, Region, Segment

SegmentKey = Tuple[str, str, str]


def segments_to_frame(segments: Iterable[Segment], *, with_uid: bool = False) -> pd.DataFrame:
    """Return ``segments`` as a table with the standard segment columns."""

    segments = list(segments)
    rows = [seg.values() for seg in segments]
    frame = pd.DataFrame(rows, columns=list(SEGMENT_COLUMNS), dtype=float)
    if with_uid:
        frame.insert(0, UID_COLUMN, [seg.uid for seg in segments])
    return frame


def segments_from_frame(frame: pd.DataFrame, uid: Optional[str] = None) -> List[Segment]:
    """Build :class:`Segment` records from a segment table.

    When ``uid`` is ``None`` and the table has a ``UID`` column, the column
    value is attached to each segment.

    Raises
    ------
    KeyError
        If one of the standard segment columns is missing.
    """

    missing = [c for c in SEGMENT_COLUMNS if c not in frame.columns]
    if missing:
        raise KeyError(f"segment table is missing columns: {', '.join(missing)}")
    values = frame[list(SEGMENT_COLUMNS)].to_numpy(dtype=float)
    if uid is None and UID_COLUMN in frame.columns:
        uids = frame[UID_COLUMN].astype(str).tolist()
    else:
        uids = [uid] * len(frame)
    return [Segment(*map(float, row), uid=u) for row, u in zip(values, uids)]


def split_by_uid(frame: pd.DataFrame) -> Dict[str, pd.DataFrame]:
    """Split a pooled segment table into one table per molecule, keeping order."""

    if UID_COLUMN not in frame.columns:
        raise KeyError(f"pooled segment table needs a {UID_COLUMN!r} column")
    out: Dict[str, pd.DataFrame] = {}
    for uid, group in frame.groupby(UID_COLUMN, sort=False):
        out[str(uid)] = group.drop(columns=[UID_COLUMN]).reset_index(drop=True)
    return out


@dataclass
class Molecule:
    """One molecule record: its sample table plus annotations."""

    uid: str
    data: pd.DataFrame
    parameters: Dict[str, float] = field(default_factory=dict)
    regions: Dict[str, Region] = field(default_factory=dict)
    tags: Set[str] = field(default_factory=set)
    metadata_uid: Optional[str] = None
    segment_tables: Dict[SegmentKey, pd.DataFrame] = field(default_factory=dict)

    def has_columns(self, *names: str) -> bool:
        return all(name in self.data.columns for name in names)

    def column(self, name: str) -> np.ndarray:
        return self.data[name].to_numpy(dtype=float)

    def put_segments_table(
        self, x_column: str, y_column: str, table: pd.DataFrame, region: str = ""
    ) -> None:
        self.segment_tables[(x_column, y_column, region or "")] = table

    def get_segments_table(
        self, x_column: str, y_column: str, region: str = ""
    ) -> Optional[pd.DataFrame]:
        return self.segment_tables.get((x_column, y_column, region or ""))


@dataclass
class Metadata:
    """Shared record for molecules imaged together; may define regions."""

    uid: str
    regions: Dict[str, Region] = field(default_factory=dict)


class MoleculeArchive:
    """In-memory, thread-safe collection of :class:`Molecule` records."""

    def __init__(self, name: str = "archive") -> None:
        self.name = name
        self._molecules: Dict[str, Molecule] = {}
        self._metadata: Dict[str, Metadata] = {}
        self._lock = threading.Lock()

    def put(self, molecule: Molecule) -> None:
        with self._lock:
            self._molecules[molecule.uid] = molecule

    def get(self, uid: str) -> Molecule:
        return self._molecules[uid]

    def put_metadata(self, metadata: Metadata) -> None:
        with self._lock:
            self._metadata[metadata.uid] = metadata

    def get_metadata(self, uid: Optional[str]) -> Optional[Metadata]:
        if uid is None:
            return None
        return self._metadata.get(uid)

    def uids(self) -> List[str]:
        return list(self._molecules)

    def __iter__(self) -> Iterator[Molecule]:
        return iter(list(self._molecules.values()))

    def __len__(self) -> int:
        return len(self._molecules)

    def __contains__(self, uid: object) -> bool:
        return uid in self._molecules

    def segment_tables(
        self, x_column: str, y_column: str, region: str = "", uids: Optional[Iterable[str]] = None
    ) -> Dict[str, pd.DataFrame]:
        """Return ``uid -> segments table`` for molecules that have one."""

        out: Dict[str, pd.DataFrame] = {}
        for uid in self.uids() if uids is None else uids:
            table = self.get(uid).get_segments_table(x_column, y_column, region)
            if table is not None:
                out[uid] = table
        return out

    def pooled_segments(
        self, x_column: str, y_column: str, region: str = "", uids: Optional[Iterable[str]] = None
    ) -> pd.DataFrame:
        """Concatenate all segment tables into one frame with a ``UID`` column."""

        tables = self.segment_tables(x_column, y_column, region, uids)
        frames = [t.assign(**{UID_COLUMN: uid}) for uid, t in tables.items()]
        if not frames:
            return pd.DataFrame(columns=[UID_COLUMN, *SEGMENT_COLUMNS])
        pooled = pd.concat(frames, ignore_index=True)
        return pooled[[UID_COLUMN, *SEGMENT_COLUMNS]]


def as_segment_tables(source: Mapping[str, pd.DataFrame] | pd.DataFrame) -> Dict[str, pd.DataFrame]:
    """Accept either a ``uid -> table`` mapping or a pooled table."""

    if isinstance(source, pd.DataFrame):
        return split_by_uid(source)
    return dict(source)


__all__ = [
    "SegmentKey",
    "segments_to_frame",
    "segments_from_frame",
    "split_by_uid",
    "as_segment_tables",
    "Molecule",
    "Metadata",
    "MoleculeArchive",
]
