import os
import sys
import numpy as np
import pytest

current_dir = os.path.dirname(__file__)
sys.path.insert(0, os.path.abspath(os.path.join(current_dir, "../../")))

from pyGPGPU import cpu_reference as ref
from pyGPGPU.OCL import clUtils as clu
from pyGPGPU.OCL.CPUBackend import CPUBackend
from pyGPGPU.OCL.Reduction import ParallelReduction
from pyGPGPU.OCL.profiler import DispatchProfiler


@pytest.fixture
def engine():
    eng = CPUBackend(nloc=8)
    assert eng.load_program(rel_path="cl/poisson.cl")
    return eng

def upload(engine, name, data):
    data = np.ascontiguousarray(data, dtype=np.float32)
    engine.create_buffer(name, data.nbytes)
    engine.toGPU(name, data)


def test_dot_small_literal(engine):
    upload(engine, "A", np.ones(4))
    upload(engine, "B", np.full(4, 2.0))
    red = ParallelReduction(engine, (4,), (8,))
    assert red.dot("A", "B") == 8.0


@pytest.mark.parametrize("strategy", ["single", "hierarchical"])
def test_dot_constant_fields(engine, strategy):
    n, c = 1000, 0.5
    upload(engine, "A", np.full(n, c))
    upload(engine, "B", np.ones(n))
    red = ParallelReduction(engine, (n,), (8,), strategy=strategy)
    result = red.dot("A", "B")
    assert abs(result - c * n) <= n * 1.2e-7 * c * 10, f"dot(const {c}, 1) over {n} = {result}, expected {c*n}"


def test_dot_commutative(engine):
    rng = np.random.default_rng(7)
    n = 777
    upload(engine, "A", rng.random(n))
    upload(engine, "B", rng.random(n))
    red = ParallelReduction(engine, (n,), (8,))
    assert np.isclose(red.dot("A", "B"), red.dot("B", "A"), rtol=1e-6)


@pytest.mark.parametrize("n", [5, 100, 5000])
def test_single_vs_hierarchical(engine, n):
    """ n=5 fits one group, 100 needs one extra pass, 5000 needs several """
    rng = np.random.default_rng(n)
    a, b = rng.random(n), rng.random(n)
    upload(engine, "A", a)
    upload(engine, "B", b)
    single = ParallelReduction(engine, (n,), (8,), strategy="single").dot("A", "B")
    hier   = ParallelReduction(engine, (n,), (8,), strategy="hierarchical", prefix="h_").dot("A", "B")
    expected = ref.dot_cpu(a.astype(np.float32), b.astype(np.float32))
    assert np.isclose(single, hier, rtol=1e-5), f"n={n}: single={single} hierarchical={hier}"
    assert np.isclose(single, expected, rtol=1e-5), f"n={n}: single={single} reference={expected}"


def test_sum_of_ones(engine):
    n = 1000
    upload(engine, "A", np.zeros(n))
    engine.dispatch("setData", (n,), (8,), overrides={"data": "A", "n": np.int32(n), "value": np.float32(1.0)})
    for strategy in ("single", "hierarchical"):
        red = ParallelReduction(engine, (n,), (8,), strategy=strategy)
        assert red.sum("A") == float(n)


def test_basel_series(engine):
    n = 1000
    upload(engine, "A", np.zeros(n))
    engine.dispatch("setHarmonic", (n,), (8,), overrides={"data": "A", "n": np.int32(n), "value": np.float32(1.0)})
    red = ParallelReduction(engine, (n,), (8,), strategy="hierarchical")
    exact = sum(1.0 / k**2 for k in range(1, n + 1))
    assert np.isclose(red.dot("A", "A"), exact, rtol=1e-5)


@pytest.mark.parametrize("strategy", ["single", "hierarchical"])
def test_dot_2D(engine, strategy):
    width, height = 20, 12
    rng = np.random.default_rng(3)
    a, b = rng.random((height, width)), rng.random((height, width))
    upload(engine, "A", a)
    upload(engine, "B", b)
    red = ParallelReduction(engine, (width, height), (4, 4), strategy=strategy)
    assert red.nGroups == 5 * 3
    assert np.isclose(red.dot("A", "B"), ref.dot_cpu(a.astype(np.float32), b.astype(np.float32)), rtol=1e-5)


def test_readback_bytes(engine):
    n = 5000
    upload(engine, "A", np.ones(n))
    single = ParallelReduction(engine, (n,), (8,), strategy="single")
    hier   = ParallelReduction(engine, (n,), (8,), strategy="hierarchical", prefix="h_")
    engine.profiler = DispatchProfiler()
    single.dot("A", "A")
    assert engine.profiler.memory_transfers["device_to_host"] == single.nGroups * clu.bytePerFloat
    engine.profiler.reset()
    hier.dot("A", "A")
    assert engine.profiler.memory_transfers["device_to_host"] == clu.bytePerFloat
    assert engine.profiler.readbacks == 1
    assert engine.profiler.dispatch_counts["reduceSum"] >= 2


def test_invalid_configuration(engine):
    with pytest.raises(ValueError):
        ParallelReduction(engine, (100,), (12,))
    with pytest.raises(ValueError):
        ParallelReduction(engine, (100,), (8,), strategy="bogus")


def test_field_size_mismatch(engine):
    upload(engine, "A", np.ones(5))
    upload(engine, "B", np.ones(5))
    red = ParallelReduction(engine, (10,), (8,))
    with pytest.raises(ValueError):
        red.dot("A", "B")
    with pytest.raises(ValueError):
        red.sum("A")


def test_realloc_reuses_partial_buffers(engine):
    red = ParallelReduction(engine, (100,), (8,))
    bufA = engine.buffer_dict["partialA"]
    red.realloc((100,), (8,))
    assert engine.buffer_dict["partialA"] is bufA, "same extent should keep the partial-result buffer"
    red.realloc((1000,), (8,))
    assert engine.buffer_dict["partialA"] is not bufA
    assert engine.buffer_nbytes("partialA") == red.nGroups * clu.bytePerFloat == 125 * clu.bytePerFloat


def test_profiler_report(engine, capsys):
    n = 100
    upload(engine, "A", np.ones(n))
    red = ParallelReduction(engine, (n,), (8,), strategy="hierarchical")
    engine.profiler = DispatchProfiler()
    red.dot("A", "A")
    prof = engine.profiler
    assert prof.total_dispatches() == 3, f"dotProduct + 2 reduceSum passes expected, got {prof.dispatch_counts}"
    assert prof.group_counts == {"dotProduct": 13, "reduceSum": 2 + 1}
    prof.print_stats()
    out = capsys.readouterr().out
    assert "Dispatches (3 total)" in out
    assert "13 thread groups" in out
