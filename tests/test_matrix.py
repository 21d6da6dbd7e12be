import json

import pytest

from matrixci.matrix import expand_matrix, matrix_size, to_github_matrix
from matrixci.model import MatrixAxis


def test_macos_matrix_names(macos_config):
    specs = expand_matrix(macos_config.axes)
    assert [s.name for s in specs] == [
        "stable-x86_64-apple-darwin",
        "beta-x86_64-apple-darwin",
        "nightly-x86_64-apple-darwin",
    ]


def test_windows_matrix_single_job(windows_config):
    specs = expand_matrix(windows_config.axes)
    assert len(specs) == 1
    assert specs[0].name == "nightly-x86_64-pc-windows-msvc"
    assert specs[0]["version"] == "nightly"
    assert specs[0]["target"] == "x86_64-pc-windows-msvc"


def test_product_size_and_uniqueness():
    axes = [
        MatrixAxis("version", ("stable", "beta", "nightly")),
        MatrixAxis("target", ("a", "b")),
        MatrixAxis("features", ("default", "full")),
    ]
    specs = expand_matrix(axes)
    assert len(specs) == 3 * 2 * 2 == matrix_size(axes)
    assert len({s.values for s in specs}) == len(specs)
    assert [s.index for s in specs] == list(range(len(specs)))


def test_outer_axis_varies_slowest():
    axes = [MatrixAxis("version", ("stable", "beta")), MatrixAxis("target", ("a", "b"))]
    assert [s.name for s in expand_matrix(axes)] == ["stable-a", "stable-b", "beta-a", "beta-b"]


def test_order_is_deterministic():
    axes = [MatrixAxis("version", ("stable", "beta")), MatrixAxis("target", ("a", "b"))]
    assert expand_matrix(axes) == expand_matrix(axes)


def test_empty_axis_means_nothing_to_run():
    axes = [MatrixAxis("version", ("stable",)), MatrixAxis("target", ())]
    assert expand_matrix(axes) == []
    assert matrix_size(axes) == 0


def test_no_axes_means_nothing_to_run():
    assert expand_matrix([]) == []


def test_duplicate_axis_values_rejected():
    with pytest.raises(ValueError, match="duplicate values"):
        MatrixAxis("version", ("stable", "stable"))


def test_duplicate_axis_names_rejected():
    with pytest.raises(ValueError, match="Duplicate axis names"):
        expand_matrix([MatrixAxis("version", ("a",)), MatrixAxis("version", ("b",))])


def test_spec_lookup():
    spec = expand_matrix([MatrixAxis("version", ("beta",)), MatrixAxis("target", ("t",))])[0]
    assert spec.as_dict() == {"version": "beta", "target": "t"}
    assert spec.get("missing") is None
    with pytest.raises(KeyError):
        spec["missing"]


def test_github_matrix_shape(windows_config):
    out = to_github_matrix(windows_config.axes)
    assert out == {
        "include": [
            {"name": "nightly-x86_64-pc-windows-msvc", "version": "nightly", "target": "x86_64-pc-windows-msvc"}
        ]
    }
    json.dumps(out)
