import os
import sys
import numpy as np
import pytest

current_dir = os.path.dirname(__file__)
sys.path.insert(0, os.path.abspath(os.path.join(current_dir, "../../")))

from pyGPGPU import cpu_reference as ref
from pyGPGPU.OCL.CPUBackend import CPUBackend
from pyGPGPU.OCL.LaplaceOperator import LaplaceOperator


@pytest.fixture
def engine():
    eng = CPUBackend(nloc=8)
    assert eng.load_program(rel_path="cl/poisson.cl")
    return eng

def upload(engine, name, data):
    data = np.ascontiguousarray(data, dtype=np.float32)
    engine.create_buffer(name, data.nbytes)
    engine.toGPU(name, data)

def apply(engine, lap, v):
    upload(engine, "v", v)
    upload(engine, "Lv", np.zeros_like(v))
    lap.apply("Lv", "v")
    return engine.fromGPU("Lv", np.zeros(np.shape(v), dtype=np.float32))


def test_1D_matches_reference(engine):
    v = np.random.default_rng(1).standard_normal(37).astype(np.float32)
    lap = LaplaceOperator(engine, (37,), h=0.5, local_size=(8,))
    np.testing.assert_allclose(apply(engine, lap, v), ref.laplacian1d_cpu(v, 0.5), rtol=1e-5, atol=1e-4)


def test_2D_matches_reference(engine):
    width, height = 20, 12
    v = np.random.default_rng(2).standard_normal((height, width)).astype(np.float32)
    lap = LaplaceOperator(engine, (width, height), h=0.1, local_size=(4, 4))
    np.testing.assert_allclose(apply(engine, lap, v), ref.laplacian2d_cpu(v, 0.1), rtol=1e-5, atol=1e-3)


def test_dirichlet_boundary(engine):
    lap = LaplaceOperator(engine, (6,), h=1.0, local_size=(8,))
    np.testing.assert_array_equal(apply(engine, lap, np.ones(6)), [1, 0, 0, 0, 0, 1])
    lap2 = LaplaceOperator(engine, (4, 3), h=1.0, local_size=(4, 4))
    Lv = apply(engine, lap2, np.ones((3, 4)))
    expected = np.array([[2, 1, 1, 2],
                         [1, 0, 0, 1],
                         [2, 1, 1, 2]], dtype=np.float32)
    np.testing.assert_array_equal(Lv, expected)


def test_symmetric_positive_definite(engine):
    width, height = 9, 7
    rng = np.random.default_rng(4)
    u = rng.standard_normal((height, width)).astype(np.float32)
    v = rng.standard_normal((height, width)).astype(np.float32)
    lap = LaplaceOperator(engine, (width, height), h=1.0, local_size=(4, 4))
    Lu = apply(engine, lap, u)
    Lv = apply(engine, lap, v)
    assert np.isclose(ref.dot_cpu(u, Lv), ref.dot_cpu(Lu, v), rtol=1e-5), "(u, Lv) should equal (Lu, v)"
    assert ref.dot_cpu(v, Lv) > 0.0


def test_invalid_use(engine):
    lap = LaplaceOperator(engine, (10,), local_size=(8,))
    with pytest.raises(ValueError):
        lap.apply("v", "v")
    with pytest.raises(ValueError):
        lap.set_spacing(0.0)
    lap.set_spacing(0.25)
    assert engine.kernel_params["h"] == np.float32(0.25)


def test_field_size_mismatch(engine):
    upload(engine, "v", np.ones(12))
    upload(engine, "Lv", np.zeros(12))
    lap = LaplaceOperator(engine, (4, 4), local_size=(4, 4))
    with pytest.raises(ValueError):
        lap.apply("Lv", "v")
