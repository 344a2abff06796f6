import os
import sys
import numpy as np
import pytest

current_dir = os.path.dirname(__file__)
sys.path.insert(0, os.path.abspath(os.path.join(current_dir, "../../")))

from pyGPGPU import cpu_reference as ref
from pyGPGPU.OCL import clUtils as clu
from pyGPGPU.OCL.OpenCLBase import OpenCLBase
from pyGPGPU.OCL.Reduction import ParallelReduction
from pyGPGPU.OCL.PoissonCG import CGParams, PoissonCG1D, PoissonCG2D

pytestmark = pytest.mark.skipif(not clu.get_platforms(), reason="no OpenCL platform available")


@pytest.fixture(scope="module")
def engine():
    eng = OpenCLBase(nloc=32)
    assert eng.load_program(rel_path="cl/poisson.cl")
    return eng


@pytest.mark.parametrize("strategy", ["single", "hierarchical"])
def test_device_dot(engine, strategy):
    n = 10000
    rng = np.random.default_rng(1)
    a = rng.random(n).astype(np.float32)
    b = rng.random(n).astype(np.float32)
    for name, data in (("A", a), ("B", b)):
        engine.create_buffer(name, data.nbytes)
        engine.toGPU(name, data)
    red = ParallelReduction(engine, (n,), (32,), strategy=strategy)
    assert np.isclose(red.dot("A", "B"), ref.dot_cpu(a, b), rtol=1e-4)


def test_device_cg_1D():
    solver = PoissonCG1D(CGParams(size=5, max_iter=50, eps=1e-5), backend="opencl", verbosity=0)
    solver.set_test_data(value=1.0)
    assert solver.solve().converged
    assert solver.residual_norm2() < 1e-5
    solver.reset()


def test_device_cg_2D():
    solver = PoissonCG2D(CGParams(width=30, height=20, max_iter=500, eps=1e-8, nloc=8), backend="opencl", verbosity=0)
    solver.set_test_data(value=1.0, radius=4.0)
    b = solver.download("b")
    assert solver.solve().converged
    v_ref, _, _ = ref.cg_cpu(b, max_iter=2000, eps=1e-20)
    np.testing.assert_allclose(solver.get_solution(), v_ref, rtol=1e-2, atol=1e-2)
    solver.reset()
