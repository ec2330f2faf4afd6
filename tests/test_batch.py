import math

import numpy as np
import pandas as pd
import pytest

from kcpfit.config import Settings
from kcpfit.core.batch import (
    CHANGE_POINT_PARAMETER,
    BatchError,
    calculate_sigmas,
    find_change_points,
    find_single_change_point,
    region_indices,
    resolve_sigma,
    run_change_point_finder,
    select_uids,
)
from kcpfit.core.tables import Metadata, Molecule, MoleculeArchive
from kcpfit.types import Region


def jump_molecule(uid="jump", **kwargs):
    x = np.arange(100.0)
    y = np.where(x < 50, x, 100.0 + 2.0 * x)
    return Molecule(uid, pd.DataFrame({"x": x, "y": y}), **kwargs)


def line_molecule(uid="line", **kwargs):
    x = np.arange(100.0)
    return Molecule(uid, pd.DataFrame({"x": x, "y": 2.0 + 0.5 * x}), **kwargs)


def make_archive(*molecules):
    archive = MoleculeArchive("test")
    for m in molecules:
        archive.put(m)
    return archive


def test_run_change_point_finder():
    archive = make_archive(jump_molecule(), line_molecule())
    calls = []
    tables = run_change_point_finder(
        archive, threads=2, progress=lambda done, total: calls.append((done, total))
    )
    assert len(tables["jump"]) == 2
    assert len(tables["line"]) == 1
    assert archive.get("jump").get_segments_table("x", "y") is tables["jump"]
    assert sorted(calls) == [(1, 2), (2, 2)]


def test_batch_error_keeps_partial_results():
    broken = Molecule("broken", pd.DataFrame({"x": [0.0, 1.0]}))
    archive = make_archive(jump_molecule(), broken)
    with pytest.raises(BatchError) as info:
        run_change_point_finder(archive)
    assert list(info.value.errors) == ["broken"]
    assert isinstance(info.value.errors["broken"], KeyError)
    assert list(info.value.results) == ["jump"]


def test_region_restricts_analysis():
    molecule = jump_molecule(regions={"roi": Region(0.0, 49.0)})
    settings = Settings()
    settings.kcp.region = "roi"
    table = find_change_points(molecule, settings=settings)
    assert len(table) == 1
    assert table["x2"].iloc[0] == 49.0
    assert molecule.get_segments_table("x", "y", "roi") is table
    assert molecule.get_segments_table("x", "y") is None


def test_region_from_metadata():
    molecule = jump_molecule(metadata_uid="meta")
    archive = make_archive(molecule)
    archive.put_metadata(Metadata("meta", {"roi": Region(60.0, 80.0)}))
    settings = Settings()
    settings.kcp.region = "roi"
    table = find_change_points(molecule, archive, settings=settings)
    assert table["x1"].iloc[0] == 60.0
    assert table["x2"].iloc[-1] == 80.0


def test_empty_region_gives_nan_segment():
    molecule = jump_molecule(regions={"roi": Region(1000.0, 2000.0)})
    settings = Settings()
    settings.kcp.region = "roi"
    table = find_change_points(molecule, settings=settings)
    assert len(table) == 1
    assert table.isna().to_numpy().all()


def test_region_indices_inclusive_end():
    x = np.arange(10.0)
    assert region_indices(x, Region(2.0, 5.0)) == (2, 6)
    assert region_indices(x, Region(2.5, 2.7)) == (3, 3)


def test_sigma_priority():
    settings = Settings()
    settings.kcp.global_sigma = 3.0
    y = np.array([0.0, 2.0, 0.0, 2.0, 10.0, 20.0])
    molecule = line_molecule(parameters={"y_sigma": 0.25})
    assert resolve_sigma(molecule, "y", y, (0, 4), settings) == 0.25
    molecule = line_molecule()
    assert resolve_sigma(molecule, "y", y, (0, 4), settings) == pytest.approx(np.std(y[:4], ddof=1))
    assert resolve_sigma(molecule, "y", y, None, settings) == 3.0
    assert resolve_sigma(molecule, "y", y, (0, 1), settings) == 3.0
    settings.kcp.calc_background_sigma = False
    assert resolve_sigma(molecule, "y", y, (0, 4), settings) == 3.0


def test_select_uids_by_tags():
    archive = make_archive(
        line_molecule("a", tags={"good", "long"}),
        line_molecule("b", tags={"good"}),
        line_molecule("c"),
    )
    assert select_uids(archive) == ["a", "b", "c"]
    assert select_uids(archive, "tagged", ["good", "long"]) == ["a"]
    assert select_uids(archive, "tagged") == ["a", "b"]
    assert select_uids(archive, "untagged") == ["c"]
    with pytest.raises(ValueError):
        select_uids(archive, "some")


def test_selection_from_settings():
    archive = make_archive(jump_molecule(tags={"keep"}), line_molecule())
    settings = Settings()
    settings.selection.include = "tagged"
    settings.selection.tags = ["keep"]
    assert list(run_change_point_finder(archive, settings=settings)) == ["jump"]


def test_calculate_sigmas_modes():
    x = np.arange(10.0)
    y = np.array([0.0, 1.0, 0.0, 1.0, 0.0, 5.0, 9.0, 5.0, 9.0, 5.0])
    data = pd.DataFrame({"x": x, "y": y})
    archive = make_archive(
        Molecule("m1", data, regions={"bg": Region(0.0, 4.0)}, metadata_uid="meta"),
        Molecule("m2", data.copy()),
    )
    archive.put_metadata(Metadata("meta", {"bg": Region(5.0, 9.0)}))

    out = calculate_sigmas(archive, "x", "y")
    assert out["m1"] == pytest.approx(np.std(y, ddof=1))
    assert archive.get("m2").parameters["y_sigma"] == out["m2"]

    out = calculate_sigmas(archive, "x", "y", "range", start=0.0, end=4.0)
    assert out["m1"] == pytest.approx(np.std(y[:5], ddof=1))

    out = calculate_sigmas(archive, "x", "y", "molecule_region", region="bg")
    assert out["m1"] == pytest.approx(np.std(y[:5], ddof=1))
    assert out["m2"] == pytest.approx(np.std(y, ddof=1))

    out = calculate_sigmas(archive, "x", "y", "metadata_region", region="bg")
    assert out["m1"] == pytest.approx(np.std(y[5:], ddof=1))
    assert out["m2"] == pytest.approx(np.std(y, ddof=1))


def test_calculate_sigmas_validates_mode():
    archive = make_archive(line_molecule())
    with pytest.raises(ValueError):
        calculate_sigmas(archive, "x", "y", "range", start=1.0)
    with pytest.raises(ValueError):
        calculate_sigmas(archive, "x", "y", "molecule_region")
    with pytest.raises(ValueError):
        calculate_sigmas(archive, "x", "y", "everything")


def test_sigma_parameter_feeds_change_point_search():
    molecule = jump_molecule(parameters={"y_sigma": 1e6})
    table = find_change_points(molecule)
    assert len(table) == 1
    assert not math.isnan(table["B"].iloc[0])


def test_single_change_point_finder():
    molecule = jump_molecule()
    table = find_single_change_point(molecule)
    assert len(table) == 2
    assert table["x2"].iloc[0] == 50.0
    assert molecule.parameters[CHANGE_POINT_PARAMETER] == 50.0
    assert molecule.get_segments_table("x", "y") is table


def test_single_change_point_finder_without_split():
    short = Molecule("short", pd.DataFrame({"x": [0.0, 1.0, 2.0], "y": [0.0, 1.0, 2.0]}))
    table = find_single_change_point(short)
    assert len(table) == 1
    assert math.isnan(short.parameters[CHANGE_POINT_PARAMETER])

    outside = jump_molecule(regions={"roi": Region(1000.0, 2000.0)})
    settings = Settings()
    settings.kcp.region = "roi"
    table = find_single_change_point(outside, settings=settings)
    assert table.isna().to_numpy().all()
    assert math.isnan(outside.parameters[CHANGE_POINT_PARAMETER])


def test_batch_single_change_point_mode():
    archive = make_archive(jump_molecule("a"), jump_molecule("b"))
    tables = run_change_point_finder(archive, single=True, threads=2)
    assert sorted(tables) == ["a", "b"]
    for uid in ("a", "b"):
        assert len(tables[uid]) == 2
        assert archive.get(uid).parameters[CHANGE_POINT_PARAMETER] == 50.0
