import numpy as np
import pandas as pd
import pytest

from kcpfit.core.tables import segments_to_frame
from kcpfit.ingest import (
    TraceFileError,
    read_parameters,
    read_regions,
    read_segments,
    read_traces,
    read_xy,
    write_segments,
)
from kcpfit.types import UID_COLUMN, Segment


def write_traces(path):
    path.write_text(
        "molecule,x,y,tags\n"
        "m1,0,1.0,good\n"
        "m1,1,2.0,\n"
        "m2,0,5.0,\n"
        "m1,2,3.0,\"good,long\"\n"
    )
    return path


def test_read_traces_groups_rows(tmp_path):
    archive = read_traces(write_traces(tmp_path / "traces.csv"), tag_column="tags")
    assert archive.name == "traces"
    assert archive.uids() == ["m1", "m2"]
    m1 = archive.get("m1")
    np.testing.assert_array_equal(m1.column("x"), [0.0, 1.0, 2.0])
    assert list(m1.data.columns) == ["x", "y"]
    assert m1.tags == {"good", "long"}
    assert archive.get("m2").tags == set()


def test_read_traces_missing_uid_column(tmp_path):
    p = tmp_path / "bad.csv"
    p.write_text("x,y\n0,1\n")
    with pytest.raises(TraceFileError) as info:
        read_traces(p)
    assert "molecule" in str(info.value)


def test_regions_and_parameters(tmp_path):
    archive = read_traces(write_traces(tmp_path / "traces.csv"))
    regions = tmp_path / "regions.csv"
    regions.write_text("molecule,name,start,end\nm1,bg,0,1\nzz,bg,0,1\n")
    assert read_regions(regions, archive) == 1
    assert archive.get("m1").regions["bg"].end == 1.0
    params = tmp_path / "params.csv"
    params.write_text("molecule,name,value\nm2,y_sigma,0.5\n")
    assert read_parameters(params, archive) == 1
    assert archive.get("m2").parameters == {"y_sigma": 0.5}


def test_segments_write_then_read(tmp_path):
    tables = {
        "m1": segments_to_frame([Segment(0, 1, 2, 3, 1, 0.1, 1, 0.01)]),
        "m2": segments_to_frame([Segment.empty()]),
    }
    out = write_segments(tables, tmp_path / "segments.csv")
    pooled = pd.read_csv(out)
    assert pooled.columns[0] == UID_COLUMN
    loaded = read_segments(out)
    assert list(loaded) == ["m1", "m2"]
    assert loaded["m1"]["B"].iloc[0] == 1.0
    assert loaded["m2"].isna().to_numpy().all()


def test_read_xy(tmp_path):
    p = tmp_path / "data.csv"
    p.write_text("X,Y,z,s\n0,0,1,0.1\n1,0,2,0.1\n0,1,,0.1\n")
    x, y, sigma = read_xy(p, ["X", "Y"], "z", "s")
    assert x.shape == (2, 2)
    np.testing.assert_array_equal(y, [1.0, 2.0])
    np.testing.assert_array_equal(sigma, [0.1, 0.1])
    with pytest.raises(TraceFileError):
        read_xy(p, ["X"], "missing")
