import os
import sys
import numpy as np
import pytest

current_dir = os.path.dirname(__file__)
sys.path.insert(0, os.path.abspath(os.path.join(current_dir, "../../")))

from pyGPGPU.OCL.CPUBackend import CPUBackend
from pyGPGPU.OCL.VectorOps import VectorOps

N = 50


@pytest.fixture
def engine():
    eng = CPUBackend(nloc=8)
    assert eng.load_program(rel_path="cl/poisson.cl")
    return eng

def upload(engine, name, data):
    data = np.ascontiguousarray(data, dtype=np.float32)
    engine.create_buffer(name, data.nbytes)
    engine.toGPU(name, data)

def download(engine, name, shape):
    return engine.fromGPU(name, np.zeros(shape, dtype=np.float32))

@pytest.fixture
def xy(engine):
    rng = np.random.default_rng(11)
    x = rng.standard_normal(N).astype(np.float32)
    y = rng.standard_normal(N).astype(np.float32)
    upload(engine, "x", x)
    upload(engine, "y", y)
    upload(engine, "z", np.zeros(N))
    return x, y


def test_scaled_add_alpha_one(engine, xy):
    x, y = xy
    VectorOps(engine, (N,), (8,)).scaled_add("z", 1.0, "x", "y")
    np.testing.assert_allclose(download(engine, "z", N), x + y, rtol=1e-6)


def test_scaled_add_alpha_zero(engine, xy):
    x, y = xy
    VectorOps(engine, (N,), (8,)).scaled_add("z", 0.0, "x", "y")
    np.testing.assert_array_equal(download(engine, "z", N), y)


def test_scaled_add_in_place(engine, xy):
    x, y = xy
    VectorOps(engine, (N,), (8,)).scaled_add("y", 2.0, "x", "y")
    np.testing.assert_allclose(download(engine, "y", N), 2.0 * x + y, rtol=1e-6)


def test_initial_residual_exact(engine):
    """ r0 = b - L v0 via scaled_add(alpha=-1, x=Lv0, y=b) is exact in float32 """
    rng = np.random.default_rng(5)
    Lv0 = rng.standard_normal(N).astype(np.float32)
    b   = rng.standard_normal(N).astype(np.float32)
    upload(engine, "Lv", Lv0)
    upload(engine, "b", b)
    upload(engine, "r", np.zeros(N))
    VectorOps(engine, (N,), (8,)).scaled_add("r", -1.0, "Lv", "b")
    np.testing.assert_array_equal(download(engine, "r", N), b - Lv0)


def test_copy_idempotent(engine, xy):
    x, _ = xy
    vops = VectorOps(engine, (N,), (8,))
    vops.copy("z", "x")
    first = download(engine, "z", N)
    vops.copy("z", "x")
    np.testing.assert_array_equal(download(engine, "z", N), first)
    np.testing.assert_array_equal(first, x)


def test_fill(engine, xy):
    VectorOps(engine, (N,), (8,)).fill("z", -1.5)
    assert np.all(download(engine, "z", N) == -1.5)


def test_2D_ops(engine):
    width, height = 20, 12
    rng = np.random.default_rng(2)
    x = rng.standard_normal((height, width)).astype(np.float32)
    y = rng.standard_normal((height, width)).astype(np.float32)
    upload(engine, "x", x)
    upload(engine, "y", y)
    upload(engine, "z", np.zeros((height, width)))
    vops = VectorOps(engine, (width, height), (4, 4))
    vops.scaled_add("z", 0.5, "x", "y")
    np.testing.assert_allclose(download(engine, "z", (height, width)), 0.5 * x + y, rtol=1e-6, atol=1e-7)
    vops.copy("z", "x")
    np.testing.assert_array_equal(download(engine, "z", (height, width)), x)


def test_field_size_mismatch(engine, xy):
    upload(engine, "short", np.zeros(N - 1))
    vops = VectorOps(engine, (N,), (8,))
    with pytest.raises(ValueError):
        vops.scaled_add("short", 1.0, "x", "y")
    with pytest.raises(ValueError):
        vops.copy("short", "x")
    with pytest.raises(ValueError):
        vops.fill("short", 0.0)
