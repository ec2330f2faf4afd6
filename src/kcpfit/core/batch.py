"""Batch change-point search and noise estimation over a molecule archive.

The functions here take care of the per-molecule bookkeeping around
:class:`~kcpfit.core.kcp.KCP`: selecting molecules by tag, resolving the
analysis and background regions into index ranges, choosing the noise
level and storing the resulting segment tables.  Molecules are processed
concurrently with a :class:`~concurrent.futures.ThreadPoolExecutor`.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Literal, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config import Settings
from ..types import Region, Segment
from ..utils.logging import LogBuilder
from .kcp import KCP, calc_sigma, generate_segments, single_change_point
from .tables import Molecule, MoleculeArchive, segments_to_frame

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
SigmaMode = Literal["all", "range", "molecule_region", "metadata_region"]

# Parameter holding the x position found by :func:`find_single_change_point`.
CHANGE_POINT_PARAMETER = "Change Here"


class BatchError(RuntimeError):
    """Raised after a batch run in which at least one molecule failed.

    ``results`` holds the segment tables of every molecule that finished and
    ``errors`` maps the failing UIDs to their exceptions.
    """

    def __init__(self, results: Dict[str, pd.DataFrame], errors: Dict[str, BaseException]):
        self.results = results
        self.errors = errors
        failed = ", ".join(sorted(errors))
        super().__init__(f"{len(errors)} molecule(s) failed: {failed}")


# ---------------------------------------------------------------------------
# Selection and regions
# ---------------------------------------------------------------------------


def select_uids(
    archive: MoleculeArchive,
    include: str = "all",
    tags: Sequence[str] = (),
) -> List[str]:
    """Return the UIDs of molecules matching ``include``.

    ``tagged`` keeps molecules carrying every tag in ``tags`` (or any tag
    when ``tags`` is empty); ``untagged`` keeps molecules without tags.
    """

    if include == "all":
        return archive.uids()
    if include == "tagged":
        wanted = set(tags)
        return [
            m.uid for m in archive if m.tags and wanted.issubset(m.tags)
        ]
    if include == "untagged":
        return [m.uid for m in archive if not m.tags]
    raise ValueError(f"unknown selection {include!r}")


def lookup_region(archive: MoleculeArchive | None, molecule: Molecule, name: str | None) -> Optional[Region]:
    """Find region ``name`` on the molecule, falling back to its metadata."""

    if not name:
        return None
    if name in molecule.regions:
        return molecule.regions[name]
    if archive is None:
        return None
    metadata = archive.get_metadata(molecule.metadata_uid)
    if metadata is not None:
        return metadata.regions.get(name)
    return None


def region_indices(x: np.ndarray, region: Region) -> Tuple[int, int]:
    """Return the half-open index range of samples with ``start <= x <= end``.

    ``x`` must be non-decreasing.
    """

    lo = int(np.searchsorted(x, region.start, side="left"))
    hi = int(np.searchsorted(x, region.end, side="right"))
    return lo, max(lo, hi)


def _drop_nan_rows(x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    keep = ~(np.isnan(x) | np.isnan(y))
    return x[keep], y[keep]


def resolve_sigma(
    molecule: Molecule,
    y_column: str,
    y: np.ndarray,
    background: Optional[Tuple[int, int]],
    settings: Settings,
) -> float:
    """Pick the noise level for one molecule.

    The molecule parameter ``<y_column>_sigma`` wins, then the background
    estimate when enabled and available, then the global sigma.
    """

    name = f"{y_column}_sigma"
    if name in molecule.parameters:
        return float(molecule.parameters[name])
    if settings.kcp.calc_background_sigma and background is not None:
        estimate = calc_sigma(y, *background)
        if math.isfinite(estimate) and estimate > 0:
            return estimate
        logger.warning(
            "background sigma for %s is not usable (%s); using global sigma",
            molecule.uid,
            estimate,
        )
    return settings.kcp.global_sigma


# ---------------------------------------------------------------------------
# Change-point search
# ---------------------------------------------------------------------------


def _analysis_window(
    molecule: Molecule,
    archive: MoleculeArchive | None,
    x_column: str,
    y_column: str,
    settings: Settings,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """Return the region-limited samples of one molecule and its noise level."""

    cfg = settings.kcp
    x, y = _drop_nan_rows(molecule.column(x_column), molecule.column(y_column))

    offset, end = 0, x.size
    if cfg.region:
        region = lookup_region(archive, molecule, cfg.region)
        if region is not None:
            offset, end = region_indices(x, region)

    background = None
    if cfg.background_region:
        bg_region = lookup_region(archive, molecule, cfg.background_region)
        if bg_region is not None:
            background = region_indices(x, bg_region)

    sigma = resolve_sigma(molecule, y_column, y, background, settings)
    return x[offset:end], y[offset:end], sigma


def find_change_points(
    molecule: Molecule,
    archive: MoleculeArchive | None = None,
    *,
    x_column: str | None = None,
    y_column: str | None = None,
    settings: Settings | None = None,
) -> pd.DataFrame:
    """Segment one molecule and store the table on it.

    The table is stored under ``(x_column, y_column, region)`` where
    ``region`` is the configured analysis region name or ``""``.
    """

    if settings is None:
        settings = Settings()
    cfg = settings.kcp
    x_column = x_column or cfg.x_column
    y_column = y_column or cfg.y_column
    x, y, sigma = _analysis_window(molecule, archive, x_column, y_column, settings)
    kcp = KCP(sigma, cfg.confidence_level, x, y, cfg.step_analysis)
    table = segments_to_frame(kcp.generate_segments())
    molecule.put_segments_table(x_column, y_column, table, cfg.region or "")
    return table


def find_single_change_point(
    molecule: Molecule,
    archive: MoleculeArchive | None = None,
    *,
    x_column: str | None = None,
    y_column: str | None = None,
    settings: Settings | None = None,
) -> pd.DataFrame:
    """Split one molecule at its most likely change point.

    No significance test is applied.  The two-segment table (one segment
    when no split improves the fit) is stored like :func:`find_change_points`
    and the x value of the split is stored as the
    :data:`CHANGE_POINT_PARAMETER` parameter, NaN when there is none.
    """

    if settings is None:
        settings = Settings()
    cfg = settings.kcp
    x_column = x_column or cfg.x_column
    y_column = y_column or cfg.y_column
    x, y, sigma = _analysis_window(molecule, archive, x_column, y_column, settings)
    if x.size == 0:
        segments = [Segment.empty()]
        position = None
    else:
        position = single_change_point(x, y, cfg.step_analysis, sigma)
        cps = [0, x.size - 1] if position is None else [0, position, x.size - 1]
        segments = generate_segments(x, y, cps, cfg.step_analysis)
    table = segments_to_frame(segments)
    molecule.put_segments_table(x_column, y_column, table, cfg.region or "")
    molecule.parameters[CHANGE_POINT_PARAMETER] = (
        float("nan") if position is None else float(x[position])
    )
    return table


def _parameter_block(builder: LogBuilder, archive: MoleculeArchive, settings: Settings) -> None:
    builder.add_parameter("MoleculeArchive", archive.name)
    builder.add_parameter("X Column", settings.kcp.x_column)
    builder.add_parameter("Y Column", settings.kcp.y_column)
    builder.add_parameter("Confidence value", settings.kcp.confidence_level)
    builder.add_parameter("Global sigma", settings.kcp.global_sigma)
    builder.add_parameter("Calculate from background", settings.kcp.calc_background_sigma)
    builder.add_parameter("Background region", settings.kcp.background_region)
    builder.add_parameter("Region", settings.kcp.region)
    builder.add_parameter("Fit steps (zero slope)", settings.kcp.step_analysis)


def run_change_point_finder(
    archive: MoleculeArchive,
    uids: Iterable[str] | None = None,
    *,
    settings: Settings | None = None,
    threads: int | None = None,
    progress: Optional[ProgressCallback] = None,
    single: bool = False,
) -> Dict[str, pd.DataFrame]:
    """Run :func:`find_change_points` over many molecules concurrently.

    With ``single`` each molecule is split once by
    :func:`find_single_change_point` instead.

    Returns ``uid -> segments table``.  When any molecule fails the others
    still complete and a :class:`BatchError` carrying both the finished
    tables and the per-UID errors is raised at the end.
    """

    if settings is None:
        settings = Settings()
    if uids is None:
        uids = select_uids(archive, settings.selection.include, settings.selection.tags)
    uids = list(uids)
    threads = threads or settings.kcp.threads

    builder = LogBuilder()
    _parameter_block(builder, archive, settings)
    logger.info(builder.build("Single Change Point Finder" if single else "Change Point Finder"))

    started = time.monotonic()
    results: Dict[str, pd.DataFrame] = {}
    errors: Dict[str, BaseException] = {}
    done = 0
    lock = threading.Lock()

    finder = find_single_change_point if single else find_change_points

    def task(uid: str) -> pd.DataFrame:
        return finder(archive.get(uid), archive, settings=settings)

    with ThreadPoolExecutor(max_workers=threads) as pool:
        futures = {pool.submit(task, uid): uid for uid in uids}
        for fut in as_completed(futures):
            uid = futures[fut]
            try:
                results[uid] = fut.result()
            except Exception as exc:  # collected and re-raised as BatchError
                logger.error("UID %s gave an error: %s", uid, exc)
                errors[uid] = exc
            with lock:
                done += 1
                if progress is not None:
                    progress(done, len(uids))

    logger.info("Time: %.2f minutes.", (time.monotonic() - started) / 60.0)
    logger.info(LogBuilder.end_block(not errors))
    if errors:
        raise BatchError(results, errors)
    return results


# ---------------------------------------------------------------------------
# Sigma calculator
# ---------------------------------------------------------------------------


def _std_in_range(x: np.ndarray, y: np.ndarray, start: float, end: float) -> float:
    mask = (x >= start) & (x <= end)
    return calc_sigma(y[mask])


def calculate_sigmas(
    archive: MoleculeArchive,
    x_column: str,
    y_column: str,
    mode: SigmaMode = "all",
    *,
    start: float | None = None,
    end: float | None = None,
    region: str | None = None,
    uids: Iterable[str] | None = None,
) -> Dict[str, float]:
    """Store the noise estimate ``<y_column>_sigma`` on each molecule.

    ``mode`` selects the samples used for the sample standard deviation:

    ``all``
        the whole trace;
    ``range``
        samples with ``start <= x <= end``;
    ``molecule_region`` / ``metadata_region``
        the named ``region`` defined on the molecule or on its metadata.
        Molecules without that region fall back to the whole trace.
    """

    if mode == "range" and (start is None or end is None):
        raise ValueError("range mode needs both start and end")
    if mode in ("molecule_region", "metadata_region") and not region:
        raise ValueError(f"{mode} mode needs a region name")
    if mode not in ("all", "range", "molecule_region", "metadata_region"):
        raise ValueError(f"unknown sigma mode {mode!r}")

    builder = LogBuilder()
    builder.add_parameter("MoleculeArchive", archive.name)
    builder.add_parameter("X Column", x_column)
    builder.add_parameter("Y Column", y_column)
    builder.add_parameter("Mode", mode)
    builder.add_parameter("from", start)
    builder.add_parameter("to", end)
    builder.add_parameter("Region", region)
    builder.add_parameter("New parameter added", f"{y_column}_sigma")
    logger.info(builder.build("Sigma Calculator"))

    name = f"{y_column}_sigma"
    out: Dict[str, float] = {}
    for uid in archive.uids() if uids is None else uids:
        molecule = archive.get(uid)
        x, y = _drop_nan_rows(molecule.column(x_column), molecule.column(y_column))
        bounds: Optional[Region] = None
        if mode == "range":
            bounds = Region(float(start), float(end))
        elif mode == "molecule_region":
            bounds = molecule.regions.get(region)
        elif mode == "metadata_region":
            metadata = archive.get_metadata(molecule.metadata_uid)
            bounds = metadata.regions.get(region) if metadata else None

        if bounds is None:
            sigma = calc_sigma(y)
        else:
            sigma = _std_in_range(x, y, bounds.start, bounds.end)
        molecule.parameters[name] = sigma
        out[uid] = sigma

    logger.info(LogBuilder.end_block(True))
    return out


__all__ = [
    "BatchError",
    "select_uids",
    "lookup_region",
    "region_indices",
    "resolve_sigma",
    "CHANGE_POINT_PARAMETER",
    "find_change_points",
    "find_single_change_point",
    "run_change_point_finder",
    "calculate_sigmas",
]
