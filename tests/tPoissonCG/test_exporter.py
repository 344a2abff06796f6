import os
import sys
from datetime import datetime
import numpy as np
import pytest

current_dir = os.path.dirname(__file__)
sys.path.insert(0, os.path.abspath(os.path.join(current_dir, "../../")))

from pyGPGPU import DataExporter


def test_export_layout(tmp_path):
    width, height = 4, 3
    data = np.arange(width * height, dtype=np.float32) * 0.5
    fname = DataExporter.export("solution", data, width, height, dirpath=str(tmp_path / "Data"), timestamp=datetime(2024, 1, 2, 3, 4, 5))
    assert os.path.basename(fname) == "solution_20240102030405.txt"
    with open(fname) as f:
        lines = f.read().splitlines()
    assert len(lines) == width * height
    assert lines[0].split() == ["0", "0", "0"]
    assert lines[1].split() == ["1", "0", "0.5"]
    assert lines[width].split() == ["0", "1", "2"]


def test_export_load_2D(tmp_path):
    field = np.random.default_rng(0).random((5, 7)).astype(np.float32)
    fname = DataExporter.export("field", field, 7, 5, dirpath=str(tmp_path))
    np.testing.assert_allclose(DataExporter.load(fname, 7, 5), field, rtol=1e-6)


def test_export_size_mismatch(tmp_path):
    with pytest.raises(ValueError):
        DataExporter.export("bad", np.zeros(10), 4, 3, dirpath=str(tmp_path))
