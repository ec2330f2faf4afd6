"""Population distributions built from pooled segment tables.

:class:`SegmentDistributionBuilder` loads the segment tables of many
molecules once and can then produce several distribution kinds from them:

* rate distributions, either as a sum of Gaussian kernels (one per segment,
  centred on the slope ``B`` with width ``sigma_B`` and weighted by segment
  duration) or as a duration-weighted histogram of slopes;
* duration and processivity histograms of contiguous runs of segments whose
  rate lies inside the filter range.

Bootstrap resampling of either segments or molecules repeats the
construction on resampled populations and adds per-bin mean and standard
deviation columns.  Cycles run in a thread pool, each with its own random
generator spawned from one :class:`numpy.random.SeedSequence`.
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from ..config import Settings
from ..types import Segment
from .gaussian import Gaussian
from .tables import as_segment_tables, segments_from_frame

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

RATE_COLUMNS = ("Rate", "Probability", "Probability Density")
RATE_BOOTSTRAP_COLUMNS = (
    "Bootstrap Probability",
    "Bootstrap Probability STD",
    "Bootstrap Probability Density",
    "Bootstrap Probability Density STD",
)
DURATION_COLUMNS = ("Duration", "Occurrences")
DURATION_BOOTSTRAP_COLUMNS = ("Bootstrap Probability", "Bootstrap Probability STD")

# Kernels evaluated per vectorised block in the Gaussian rate distribution.
_KERNEL_BLOCK = 256


def _usable(seg: Segment) -> bool:
    return not (math.isnan(seg.b) or math.isnan(seg.x1) or math.isnan(seg.x2))


def bootstrap_statistics(distributions: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Return per-bin mean and sample standard deviation over cycles.

    ``distributions`` has shape ``(cycles, bins)``.  Values are shifted by
    the first cycle before summing, so identical cycles give exactly zero
    spread.
    """

    dists = np.asarray(distributions, dtype=float)
    cycles = dists.shape[0]
    with np.errstate(divide="ignore", invalid="ignore"):
        shifted = dists - dists[0]
        mean_shift = shifted.sum(axis=0) / cycles
        std = np.sqrt(((shifted - mean_shift) ** 2).sum(axis=0) / (cycles - 1))
    return dists[0] + mean_shift, std


class SegmentDistributionBuilder:
    """Build rate, duration and processivity distributions.

    Parameters
    ----------
    segment_tables:
        Either a mapping ``uid -> segments table`` or one pooled table with a
        ``UID`` column.
    start, end, bins:
        Binning range ``[start, end)`` and number of equal-width bins.
    uids:
        Molecules to include, in order.  Defaults to all molecules in
        ``segment_tables``.  Molecules without a table contribute nothing.
    settings:
        Optional :class:`~kcpfit.config.Settings` providing defaults for the
        binning, filter and bootstrap options.
    seed, threads:
        Seed for bootstrap resampling and size of the worker pool.
    progress:
        Optional callback invoked as ``progress(done, total)`` after each
        bootstrap cycle.
    """

    def __init__(
        self,
        segment_tables: Mapping[str, pd.DataFrame] | pd.DataFrame,
        start: float | None = None,
        end: float | None = None,
        bins: int | None = None,
        *,
        uids: Iterable[str] | None = None,
        settings: Settings | None = None,
        seed: int | None = None,
        threads: int | None = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        if settings is None:
            settings = Settings()
        cfg = settings.distribution

        self.start = cfg.start if start is None else float(start)
        self.end = cfg.end if end is None else float(end)
        self.bins = cfg.bins if bins is None else int(bins)
        if self.bins < 1:
            raise ValueError("bins must be a positive integer")
        if not self.end > self.start:
            raise ValueError("end must be greater than start")
        self.bin_width = (self.end - self.start) / self.bins
        self.integration_resolution = cfg.integration_resolution

        self.filter = cfg.filter
        self.filter_start = cfg.filter_start
        self.filter_stop = cfg.filter_stop

        self.bootstrap_mode = cfg.bootstrap
        self.bootstrap_cycles = cfg.bootstrap_cycles
        self.seed = cfg.seed if seed is None else seed
        self.threads = cfg.threads if threads is None else threads
        self.progress = progress

        tables = as_segment_tables(segment_tables)
        self.uids: List[str] = list(tables) if uids is None else list(uids)
        self._segments: Dict[str, List[Segment]] = {}
        for uid in self.uids:
            table = tables.get(uid)
            if table is None or uid in self._segments:
                continue
            self._segments[uid] = [s for s in segments_from_frame(table, uid) if _usable(s)]

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_filter(self, filter_start: float, filter_stop: float) -> None:
        """Only use segments with ``filter_start < B < filter_stop``."""
        self.filter = True
        self.filter_start = float(filter_start)
        self.filter_stop = float(filter_stop)

    def unset_filter(self) -> None:
        self.filter = False

    def bootstrap_molecules(self, cycles: int) -> None:
        self._set_bootstrap("molecules", cycles)

    def bootstrap_segments(self, cycles: int) -> None:
        self._set_bootstrap("segments", cycles)

    def no_bootstrapping(self) -> None:
        self.bootstrap_mode = "none"

    def _set_bootstrap(self, mode: str, cycles: int) -> None:
        if cycles < 2:
            raise ValueError("bootstrapping needs at least two cycles")
        self.bootstrap_mode = mode
        self.bootstrap_cycles = int(cycles)

    @property
    def bootstrapping(self) -> bool:
        return self.bootstrap_mode != "none"

    @property
    def bin_centers(self) -> np.ndarray:
        return self.start + (np.arange(self.bins) + 0.5) * self.bin_width

    @property
    def bin_edges(self) -> np.ndarray:
        return self.start + np.arange(self.bins + 1) * self.bin_width

    def _in_filter(self, rate: float) -> bool:
        return not self.filter or (self.filter_start < rate < self.filter_stop)

    # ------------------------------------------------------------------
    # Populations
    # ------------------------------------------------------------------

    def _groups(self, uids: Sequence[str]) -> List[List[Segment]]:
        return [self._segments.get(uid, []) for uid in uids]

    def _rate_segments(self, groups: Iterable[List[Segment]]) -> List[Segment]:
        return [s for group in groups for s in group if self._in_filter(s.b)]

    def _gaussians(self, groups: Iterable[List[Segment]]) -> List[Gaussian]:
        out = []
        for seg in self._rate_segments(groups):
            if math.isnan(seg.sigma_b) or not seg.sigma_b > 0:
                continue
            out.append(Gaussian(seg.b, seg.sigma_b, seg.duration))
        return out

    # ------------------------------------------------------------------
    # Raw distributions
    # ------------------------------------------------------------------

    def gaussian_distribution(self, gaussians: Sequence[Gaussian]) -> np.ndarray:
        """Integrate duration-weighted kernels over each bin.

        Each bin is sampled at ``integration_resolution`` equally spaced
        points starting at its left edge.
        """

        res = self.integration_resolution
        step = self.bin_width / res
        grid = self.start + np.arange(self.bins * res) * step
        total = np.zeros(grid.size)
        for i in range(0, len(gaussians), _KERNEL_BLOCK):
            block = gaussians[i : i + _KERNEL_BLOCK]
            centers = np.array([g.x0 for g in block])[:, None]
            widths = np.array([g.x_sigma for g in block])[:, None]
            weights = np.array([g.duration * g.normalization for g in block])[:, None]
            dens = weights * np.exp(-((grid[None, :] - centers) ** 2) / (2.0 * widths**2))
            total += dens.sum(axis=0)
        return total.reshape(self.bins, res).sum(axis=1) * step

    def histogram_distribution(self, segments: Sequence[Segment]) -> np.ndarray:
        """Duration-weighted histogram of slopes with bins ``(lo, hi]``."""

        dist = np.zeros(self.bins)
        if not segments:
            return dist
        rates = np.array([s.b for s in segments])
        weights = np.array([s.duration for s in segments])
        idx = np.searchsorted(self.bin_edges, rates, side="left") - 1
        keep = (idx >= 0) & (idx < self.bins)
        np.add.at(dist, idx[keep], weights[keep])
        return dist

    def durations(
        self,
        groups: Iterable[List[Segment]],
        processivity_per_region: bool = False,
        processivity_per_molecule: bool = False,
    ) -> List[float]:
        """Return one value per qualifying event.

        An event is a maximal run of consecutive in-filter segments of one
        molecule.  Its value is the summed extent ``x2 - x1``, or for
        processivity per region the summed ``B * (x2 - x1)``.  For
        processivity per molecule all in-filter segments of a molecule form
        a single event.
        """

        events: List[float] = []
        for group in groups:
            if processivity_per_molecule:
                inside = [s.b * s.duration for s in group if self._in_filter(s.b)]
                if inside:
                    events.append(float(sum(inside)))
                continue
            run: Optional[float] = None
            for seg in group:
                if self._in_filter(seg.b):
                    value = seg.b * seg.duration if processivity_per_region else seg.duration
                    run = value if run is None else run + value
                elif run is not None:
                    events.append(run)
                    run = None
            if run is not None:
                events.append(run)
        return events

    def duration_distribution(self, events: Sequence[float]) -> np.ndarray:
        """Count events into bins ``[lo, hi)``."""

        dist = np.zeros(self.bins)
        if not events:
            return dist
        values = np.asarray(events, dtype=float)
        idx = np.searchsorted(self.bin_edges, values, side="right") - 1
        keep = (idx >= 0) & (idx < self.bins)
        np.add.at(dist, idx[keep], 1.0)
        return dist

    # ------------------------------------------------------------------
    # Public builders
    # ------------------------------------------------------------------

    def build_rate_gaussian(self) -> pd.DataFrame:
        """Rate distribution as a sum of Gaussian kernels."""

        groups = self._groups(self.uids)
        gaussians = self._gaussians(groups)
        logger.info("building Gaussian rate distribution from %d segments", len(gaussians))
        table = self._rate_table(self.gaussian_distribution(gaussians))
        if self.bootstrapping:
            boots = self._bootstrap(
                gaussians,
                lambda sample: self.gaussian_distribution(sample),
                lambda draw: self.gaussian_distribution(self._gaussians(draw)),
            )
            self._add_rate_bootstrap_columns(table, boots)
        return table

    def build_rate_histogram(self) -> pd.DataFrame:
        """Rate distribution as a duration-weighted histogram of slopes."""

        groups = self._groups(self.uids)
        segments = self._rate_segments(groups)
        logger.info("building rate histogram from %d segments", len(segments))
        table = self._rate_table(self.histogram_distribution(segments))
        if self.bootstrapping:
            boots = self._bootstrap(
                segments,
                lambda sample: self.histogram_distribution(sample),
                lambda draw: self.histogram_distribution(self._rate_segments(draw)),
            )
            self._add_rate_bootstrap_columns(table, boots)
        return table

    def build_duration_histogram(self) -> pd.DataFrame:
        return self._build_duration(False, False)

    def build_processivity_by_molecule_histogram(self) -> pd.DataFrame:
        return self._build_duration(False, True)

    def build_processivity_by_region_histogram(self) -> pd.DataFrame:
        return self._build_duration(True, False)

    def _build_duration(self, per_region: bool, per_molecule: bool) -> pd.DataFrame:
        groups = self._groups(self.uids)

        def build(sample_groups):
            return self.duration_distribution(self.durations(sample_groups, per_region, per_molecule))

        dist = build(groups)
        table = pd.DataFrame({DURATION_COLUMNS[0]: self.bin_centers, DURATION_COLUMNS[1]: dist})
        if self.bootstrapping:
            segments = [s for group in groups for s in group]
            boots = self._bootstrap(
                segments,
                lambda sample: build(_regroup(sample)),
                build,
            )
            mean, std = bootstrap_statistics(boots)
            table[DURATION_BOOTSTRAP_COLUMNS[0]] = mean
            table[DURATION_BOOTSTRAP_COLUMNS[1]] = std
        return table

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _rate_table(self, dist: np.ndarray) -> pd.DataFrame:
        with np.errstate(divide="ignore", invalid="ignore"):
            normalization = dist.sum()
            probability = dist / normalization
            density = dist / (normalization * self.bin_width)
        return pd.DataFrame(
            {
                RATE_COLUMNS[0]: self.bin_centers,
                RATE_COLUMNS[1]: probability,
                RATE_COLUMNS[2]: density,
            }
        )

    def _add_rate_bootstrap_columns(self, table: pd.DataFrame, boots: np.ndarray) -> None:
        mean, std = bootstrap_statistics(boots)
        table[RATE_BOOTSTRAP_COLUMNS[0]] = mean
        table[RATE_BOOTSTRAP_COLUMNS[1]] = std
        table[RATE_BOOTSTRAP_COLUMNS[2]] = mean / self.bin_width
        table[RATE_BOOTSTRAP_COLUMNS[3]] = std / self.bin_width

    def _bootstrap(
        self,
        population: Sequence,
        from_segments: Callable[[list], np.ndarray],
        from_molecules: Callable[[List[List[Segment]]], np.ndarray],
    ) -> np.ndarray:
        """Run all bootstrap cycles and return normalised distributions.

        ``population`` is resampled when bootstrapping segments; molecule
        bootstrapping resamples :attr:`uids` instead.
        """

        cycles = self.bootstrap_cycles
        seeds = np.random.SeedSequence(self.seed).spawn(cycles)
        mode = self.bootstrap_mode
        done = 0
        lock = threading.Lock()

        def run(q: int) -> np.ndarray:
            rng = np.random.default_rng(seeds[q])
            if mode == "molecules":
                picks = rng.integers(0, len(self.uids), size=len(self.uids)) if self.uids else []
                dist = from_molecules(self._groups([self.uids[i] for i in picks]))
            else:
                picks = rng.integers(0, len(population), size=len(population)) if population else []
                dist = from_segments([population[i] for i in picks])
            with np.errstate(divide="ignore", invalid="ignore"):
                return dist / dist.sum()

        logger.info("bootstrapping %s over %d cycles", mode, cycles)
        results: Dict[int, np.ndarray] = {}
        with ThreadPoolExecutor(max_workers=self.threads) as pool:
            futures = {pool.submit(run, q): q for q in range(cycles)}
            try:
                for fut in as_completed(futures):
                    results[futures[fut]] = fut.result()
                    with lock:
                        done += 1
                        if self.progress is not None:
                            self.progress(done, cycles)
            except Exception:
                for fut in futures:
                    fut.cancel()
                raise
        return np.stack([results[q] for q in range(cycles)])


def _regroup(segments: Sequence[Segment]) -> List[List[Segment]]:
    """Split a segment sequence into runs of consecutive equal ``uid``."""

    groups: List[List[Segment]] = []
    current: Optional[str] = None
    for seg in segments:
        if not groups or seg.uid != current:
            groups.append([])
            current = seg.uid
        groups[-1].append(seg)
    return groups


__all__ = [
    "RATE_COLUMNS",
    "RATE_BOOTSTRAP_COLUMNS",
    "DURATION_COLUMNS",
    "DURATION_BOOTSTRAP_COLUMNS",
    "bootstrap_statistics",
    "SegmentDistributionBuilder",
]
