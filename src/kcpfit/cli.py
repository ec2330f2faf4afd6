from __future__ import annotations

"""Command line interface for kcpfit using Typer."""

from pathlib import Path
from typing import Dict, List, Optional

import json
import logging

import numpy as np
import pandas as pd
import typer
from pydantic import ValidationError

from .config import Settings, load_settings
from .core.batch import (
    CHANGE_POINT_PARAMETER,
    BatchError,
    calculate_sigmas,
    run_change_point_finder,
)
from .core.distribution import SegmentDistributionBuilder
from .core.lm import LevenbergMarquardt
from .core.models import available_models, get_model
from .ingest import (
    TraceFileError,
    read_parameters,
    read_regions,
    read_segments,
    read_traces,
    read_xy,
    write_segments,
)
from .utils.logging import get_logger

app = typer.Typer(help="Change-point segmentation and segment statistics")
logger = logging.getLogger(__name__)

DISTRIBUTION_KINDS = {
    "rate-gaussian": "build_rate_gaussian",
    "rate-histogram": "build_rate_histogram",
    "duration": "build_duration_histogram",
    "processivity-molecule": "build_processivity_by_molecule_histogram",
    "processivity-region": "build_processivity_by_region_histogram",
}


def _parse_override_value(raw: str) -> object:
    lower = raw.lower()
    if lower in {"true", "false"}:
        return lower == "true"
    if lower in {"null", "none"}:
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        pass
    if raw.startswith("[") or raw.startswith("{"):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            raise typer.BadParameter(f"invalid JSON override value: {raw}") from None
    return raw


def _ensure_path(settings: Settings, keys: List[str]) -> None:
    current: object = settings
    for key in keys[:-1]:
        if not hasattr(current, key):
            raise typer.BadParameter(f"unknown configuration key: {'.'.join(keys)}")
        current = getattr(current, key)
    if not hasattr(current, keys[-1]):
        raise typer.BadParameter(f"unknown configuration key: {'.'.join(keys)}")


def _apply_override(data: Dict[str, object], keys: List[str], value: object) -> None:
    target = data
    for key in keys[:-1]:
        existing = target.get(key)
        if not isinstance(existing, dict):
            existing = {}
            target[key] = existing
        target = existing
    target[keys[-1]] = value


def _update(settings: Settings, section: str, **values: object) -> Settings:
    """Return a copy of ``settings`` with non-``None`` ``values`` applied."""

    data = settings.model_dump()
    data[section].update({k: v for k, v in values.items() if v is not None})
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise typer.BadParameter(f"invalid option value: {exc}") from exc


def _load_archive(
    traces: Path,
    uid_column: str,
    tag_column: Optional[str],
    regions: Optional[Path],
    parameters: Optional[Path],
):
    try:
        archive = read_traces(traces, uid_column, tag_column=tag_column)
        if regions is not None:
            read_regions(regions, archive, uid_column)
        if parameters is not None:
            read_parameters(parameters, archive, uid_column)
    except (OSError, TraceFileError, pd.errors.ParserError) as exc:
        raise typer.BadParameter(f"failed to read input: {exc}") from exc
    return archive


@app.callback()
def init(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        dir_okay=False,
        file_okay=True,
        exists=False,
        help="Path to a YAML or JSON configuration file.",
    ),
    set_overrides: List[str] = typer.Option(
        [],
        "--set",
        help="Override configuration values using dotted paths, e.g. kcp.confidence_level=0.95",
    ),
) -> None:
    """Initialise the Typer context with validated settings."""

    if config is not None and not config.exists():
        raise typer.BadParameter(f"configuration file not found: {config}")

    try:
        settings = load_settings(config) if config else Settings()
    except (FileNotFoundError, TypeError, json.JSONDecodeError, ValidationError) as exc:
        raise typer.BadParameter(f"failed to load configuration: {exc}") from exc

    if set_overrides:
        data = settings.model_dump()
        for override in set_overrides:
            if "=" not in override:
                raise typer.BadParameter(
                    "overrides must be of the form --set section.key=value"
                )
            key, raw_value = override.split("=", 1)
            if not key:
                raise typer.BadParameter("override key cannot be empty")
            keys = key.split(".")
            _ensure_path(settings, keys)
            value = _parse_override_value(raw_value)
            _apply_override(data, keys, value)
        try:
            settings = Settings.model_validate(data)
        except ValidationError as exc:
            raise typer.BadParameter(f"invalid configuration override: {exc}") from exc

    get_logger("kcpfit", settings.logging.level)
    ctx.obj = settings


@app.command()
def segments(
    ctx: typer.Context,
    traces: Path = typer.Argument(..., exists=True, dir_okay=False),
    output: Path = typer.Option(Path("segments.csv"), "--output", "-o"),
    x_column: Optional[str] = typer.Option(None, "--x"),
    y_column: Optional[str] = typer.Option(None, "--y"),
    uid_column: str = typer.Option("molecule", "--uid-column"),
    tag_column: Optional[str] = typer.Option(None, "--tag-column"),
    regions: Optional[Path] = typer.Option(None, "--regions", exists=True, dir_okay=False),
    parameters: Optional[Path] = typer.Option(None, "--parameters", exists=True, dir_okay=False),
    confidence: Optional[float] = typer.Option(None, "--confidence"),
    sigma: Optional[float] = typer.Option(None, "--sigma", help="Global sigma"),
    step: Optional[bool] = typer.Option(None, "--step/--no-step", help="Fit zero-slope steps"),
    threads: Optional[int] = typer.Option(None, "--threads"),
    single: bool = typer.Option(False, "--single", help="Split once at the most likely change point"),
    changes: Optional[Path] = typer.Option(None, "--changes", help="Write the --single split positions here"),
) -> None:
    """Find change points in every molecule of a long-format trace table.

    The resulting segment tables are pooled into one CSV with a ``UID``
    column.  Molecules that fail are reported and the command exits with
    status 1 after writing the tables of the molecules that succeeded.

    With ``--single`` every molecule is split once at its most likely
    change point without a significance test.  ``--changes`` writes those
    split positions in the ``molecule,name,value`` parameter layout.
    """

    cfg = _update(
        ctx.obj,
        "kcp",
        x_column=x_column,
        y_column=y_column,
        confidence_level=confidence,
        global_sigma=sigma,
        step_analysis=step,
        threads=threads,
    )
    archive = _load_archive(traces, uid_column, tag_column, regions, parameters)
    for column in (cfg.kcp.x_column, cfg.kcp.y_column):
        if any(not m.has_columns(column) for m in archive):
            raise typer.BadParameter(f"column {column!r} not found in {traces}")

    failed = False
    try:
        tables = run_change_point_finder(archive, settings=cfg, single=single)
    except BatchError as exc:
        tables = exc.results
        failed = True
        for uid, error in sorted(exc.errors.items()):
            typer.secho(f"{uid}: {error}", err=True)

    write_segments({uid: tables[uid] for uid in archive.uids() if uid in tables}, output)
    if changes is not None:
        frame = pd.DataFrame(
            {
                uid_column: [uid for uid in archive.uids() if uid in tables],
                "name": CHANGE_POINT_PARAMETER,
            }
        )
        frame["value"] = [
            archive.get(uid).parameters.get(CHANGE_POINT_PARAMETER, np.nan)
            for uid in frame[uid_column]
        ]
        frame.to_csv(changes, index=False)
    n_segments = sum(len(t) for t in tables.values())
    typer.echo(f"wrote {n_segments} segments for {len(tables)} molecules to {output}")
    if failed:
        raise typer.Exit(code=1)


@app.command()
def sigma(
    ctx: typer.Context,
    traces: Path = typer.Argument(..., exists=True, dir_okay=False),
    output: Optional[Path] = typer.Option(None, "--output", "-o"),
    x_column: Optional[str] = typer.Option(None, "--x"),
    y_column: Optional[str] = typer.Option(None, "--y"),
    uid_column: str = typer.Option("molecule", "--uid-column"),
    mode: str = typer.Option("all", "--mode", help="all, range, molecule_region or metadata_region"),
    start: Optional[float] = typer.Option(None, "--from"),
    end: Optional[float] = typer.Option(None, "--to"),
    region: Optional[str] = typer.Option(None, "--region"),
    regions: Optional[Path] = typer.Option(None, "--regions", exists=True, dir_okay=False),
) -> None:
    """Estimate the noise level of each molecule.

    The output uses the ``molecule,name,value`` layout accepted by
    ``segments --parameters``.
    """

    cfg: Settings = ctx.obj
    x_column = x_column or cfg.kcp.x_column
    y_column = y_column or cfg.kcp.y_column
    archive = _load_archive(traces, uid_column, None, regions, None)
    try:
        sigmas = calculate_sigmas(archive, x_column, y_column, mode, start=start, end=end, region=region)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    name = f"{y_column}_sigma"
    frame = pd.DataFrame(
        {uid_column: list(sigmas), "name": name, "value": list(sigmas.values())}
    )
    if output:
        frame.to_csv(output, index=False)
        typer.echo(f"wrote {len(frame)} sigma values to {output}")
    else:
        typer.echo(frame.to_csv(index=False).rstrip())


@app.command()
def distribution(
    ctx: typer.Context,
    segments_file: Path = typer.Argument(..., exists=True, dir_okay=False),
    kind: str = typer.Option("rate-gaussian", "--kind", "-k"),
    output: Optional[Path] = typer.Option(None, "--output", "-o"),
    start: Optional[float] = typer.Option(None, "--start"),
    end: Optional[float] = typer.Option(None, "--end"),
    bins: Optional[int] = typer.Option(None, "--bins"),
    filter_start: Optional[float] = typer.Option(None, "--filter-start"),
    filter_stop: Optional[float] = typer.Option(None, "--filter-stop"),
    bootstrap: Optional[str] = typer.Option(None, "--bootstrap", help="none, segments or molecules"),
    cycles: Optional[int] = typer.Option(None, "--cycles"),
    seed: Optional[int] = typer.Option(None, "--seed"),
    threads: Optional[int] = typer.Option(None, "--threads"),
) -> None:
    """Build a rate, duration or processivity distribution from segments.

    ``--filter-start``/``--filter-stop`` enable the rate filter.

    Duration and processivity tables count segments in an ``Occurrences``
    column.  Existing tables that spell it ``Occurences`` need that column
    renamed before they are compared with these outputs.
    """

    if kind not in DISTRIBUTION_KINDS:
        raise typer.BadParameter(
            f"unknown kind {kind!r}; choose from {', '.join(DISTRIBUTION_KINDS)}"
        )
    use_filter = True if (filter_start is not None or filter_stop is not None) else None
    cfg = _update(
        ctx.obj,
        "distribution",
        start=start,
        end=end,
        bins=bins,
        filter=use_filter,
        filter_start=filter_start,
        filter_stop=filter_stop,
        bootstrap=bootstrap,
        bootstrap_cycles=cycles,
        seed=seed,
        threads=threads,
    )
    try:
        tables = read_segments(segments_file)
    except (OSError, TraceFileError, KeyError) as exc:
        raise typer.BadParameter(f"failed to read segments: {exc}") from exc

    builder = SegmentDistributionBuilder(tables, settings=cfg)
    table = getattr(builder, DISTRIBUTION_KINDS[kind])()
    if output:
        table.to_csv(output, index=False)
        typer.echo(f"wrote {len(table)} bins to {output}")
    else:
        typer.echo(table.to_csv(index=False).rstrip())


def _parse_floats(raw: str) -> List[float]:
    try:
        return [float(v) for v in raw.split(",") if v.strip()]
    except ValueError:
        raise typer.BadParameter(f"expected comma-separated numbers, got {raw!r}") from None


@app.command()
def fit(
    ctx: typer.Context,
    data: Path = typer.Argument(..., exists=True, dir_okay=False),
    model: str = typer.Option(..., "--model", "-m"),
    p0: str = typer.Option(..., "--p0", help="Comma-separated initial parameters"),
    x_columns: List[str] = typer.Option(["x"], "--x", help="Input column(s); repeat for surfaces"),
    y_column: str = typer.Option("y", "--y"),
    sigma_column: Optional[str] = typer.Option(None, "--sigma"),
    fix: List[int] = typer.Option([], "--fix", help="Index of a parameter to keep fixed"),
    precision: Optional[float] = typer.Option(None, "--precision"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations"),
) -> None:
    """Fit a registered model to tabulated data with Levenberg-Marquardt."""

    if model not in available_models():
        raise typer.BadParameter(
            f"unknown model {model!r}; choose from {', '.join(available_models())}"
        )
    cfg = _update(ctx.obj, "lm", precision=precision, max_iterations=max_iterations)
    fn = get_model(model, delta_parameter=cfg.lm.delta_parameter)
    params = _parse_floats(p0)
    if len(params) != fn.n_parameters:
        raise typer.BadParameter(
            f"model {model!r} takes {fn.n_parameters} parameters "
            f"({', '.join(fn.parameter_names)}), got {len(params)}"
        )
    vary = [i not in set(fix) for i in range(len(params))]
    try:
        x, y, sig = read_xy(data, x_columns, y_column, sigma_column)
    except (OSError, TraceFileError) as exc:
        raise typer.BadParameter(f"failed to read data: {exc}") from exc

    solver = LevenbergMarquardt(fn, settings=cfg)
    result = solver.solve(params, x if x.shape[1] > 1 else x[:, 0], y, sig, vary=vary)
    for name, value, err in zip(fn.parameter_names, result.parameters, result.std_dev):
        typer.echo(f"{name} = {value:.6g} +/- {err:.3g}")
    typer.echo(f"chi2 = {result.chi_squared:.6g}")
    typer.echo(f"r2 = {result.r_squared(y, sig):.6f}")
    typer.echo(f"iterations = {result.iterations}")
    if not np.all(np.isfinite(result.parameters)):
        raise typer.Exit(code=1)


def main() -> None:
    """Execute the Typer application."""

    app()


if __name__ == "__main__":
    main()
