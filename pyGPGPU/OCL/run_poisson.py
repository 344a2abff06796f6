import argparse
import math
import os
import sys
import time
import numpy as np
import matplotlib.pyplot as plt

THIS_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT_DIR = os.path.abspath(os.path.join(THIS_DIR, "..", ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from pyGPGPU import DataExporter
from pyGPGPU import cpu_reference as ref
from pyGPGPU.OCL import clUtils as clu
from pyGPGPU.OCL.backends import make_backend
from pyGPGPU.OCL.profiler import DispatchProfiler
from pyGPGPU.OCL.Reduction import ParallelReduction
from pyGPGPU.OCL.VectorOps import VectorOps
from pyGPGPU.OCL.PoissonCG import CGParams, PoissonCG1D, PoissonCG2D


def make_engine(backend, nloc, verbosity):
    engine = make_backend(backend, nloc=nloc, verbosity=verbosity)
    if not engine.load_program(rel_path="cl/poisson.cl", bPrint=verbosity > 1):
        raise FileNotFoundError("cl/poisson.cl not found next to pyGPGPU/OCL")
    engine.profiler = DispatchProfiler()
    return engine


def run_sum(size, backend, nloc, reduction, verbosity):
    """ sum of a field filled with ones == size """
    engine = make_engine(backend, nloc, verbosity)
    engine.create_buffer("A", size * clu.bytePerFloat)
    vops = VectorOps(engine, (size,), (nloc,))
    red  = ParallelReduction(engine, (size,), (nloc,), strategy=reduction, verbosity=verbosity)
    vops.fill("A", 1.0)
    t0 = time.perf_counter()
    result = red.sum("A")
    dt = time.perf_counter() - t0
    print(f"sum(ones[{size}]) = {result:.1f}  expected {size}  ({reduction}, {red.nGroups} groups) time={dt*1000:.3f}ms")
    return engine, result


def run_dot(size, backend, nloc, reduction, verbosity):
    """ dot(a,a) with a[k] = 1/(k+1) -> pi^2/6 (Basel series) """
    engine = make_engine(backend, nloc, verbosity)
    engine.create_buffer("A", size * clu.bytePerFloat)
    red = ParallelReduction(engine, (size,), (nloc,), strategy=reduction, verbosity=verbosity)
    engine.dispatch("setHarmonic", (size,), (nloc,), overrides={"data": "A", "n": np.int32(size), "value": np.float32(1.0)})
    t0 = time.perf_counter()
    result = red.dot("A", "A")
    dt = time.perf_counter() - t0
    exact = sum(1.0 / (k + 1) ** 2 for k in range(size))
    print(f"sum_k 1/(k+1)^2 [{size}] = {result:.7f}  exact {exact:.7f}  pi^2/6 = {math.pi**2/6:.7f}  time={dt*1000:.3f}ms")
    return engine, result


def run_cg(params, backend, verbosity, bTestData=True, export=None, plot=False, check=False):
    Solver = PoissonCG2D if params.is2D else PoissonCG1D
    solver = Solver(params, backend=backend, verbosity=verbosity)
    solver.initialize()
    solver.cl.profiler = DispatchProfiler()
    if bTestData:
        solver.set_test_data(value=1.0)
    b = solver.download("b")
    state = solver.solve(warm_start=True)
    v = solver.get_solution()
    print(f"{Solver.__name__}: status={state.status.name} iterations={state.iterations} rkrk={state.rkrk:g} |b-Lv|^2={solver.residual_norm2():g} time={solver.elapsed*1000:.1f}ms")

    if check:
        v_ref, nref, rr_ref = ref.cg_cpu(b, h=params.h, max_iter=10 * v.size, eps=1e-14)
        err = float(np.max(np.abs(v - v_ref)))
        print(f"check: cg_cpu converged in {nref} iterations, max|v - v_ref| = {err:g}  max|v_ref| = {np.max(np.abs(v_ref)):g}")

    if export:
        w, hgt = (params.width, params.height) if params.is2D else (params.size, 1)
        DataExporter.export(export + "_source",   b, w, hgt)
        DataExporter.export(export + "_solution", v, w, hgt)

    if plot:
        plot_result(b, v, state, title=f"{Solver.__name__} {params.extent} h={params.h}")
    return solver, state


def plot_result(b, v, state, title=""):
    fig, axs = plt.subplots(1, 3, figsize=(15, 4.5))
    if v.ndim == 2:
        im = axs[0].imshow(b, origin="lower", cmap="viridis"); plt.colorbar(im, ax=axs[0]); axs[0].set_title("source b")
        im = axs[1].imshow(v, origin="lower", cmap="viridis"); plt.colorbar(im, ax=axs[1]); axs[1].set_title("solution v")
    else:
        axs[0].plot(b, ".-"); axs[0].set_title("source b")
        axs[1].plot(v, ".-"); axs[1].set_title("solution v")
    axs[2].semilogy(np.maximum(state.history, 1e-30), ".-"); axs[2].set_title("(r,r) per iteration"); axs[2].set_xlabel("iteration")
    fig.suptitle(title)
    plt.tight_layout()
    plt.show()


"""
python3 -u -m pyGPGPU.OCL.run_poisson --mode cg2d --width 100 --height 100 --h 0.1 --max_iter 500 --eps 1e-7 --check
python3 -u -m pyGPGPU.OCL.run_poisson --mode dot  --size 100000 --reduction hierarchical --backend cpu
"""
if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Parallel reduction and Conjugate-Gradient Poisson solver on OpenCL")
    parser.add_argument("--mode",      type=str,   default="cg2d",   choices=["sum", "dot", "cg1d", "cg2d"], help="Demo to run")
    parser.add_argument("--backend",   type=str,   default="auto",   choices=["auto", "opencl", "cpu"],      help="Device execution engine")
    parser.add_argument("--size",      type=int,   default=5,        help="1D problem size (sum, dot, cg1d)")
    parser.add_argument("--width",     type=int,   default=100,      help="2D grid width  (cg2d)")
    parser.add_argument("--height",    type=int,   default=100,      help="2D grid height (cg2d)")
    parser.add_argument("--h",         type=float, default=None,     help="Grid spacing (default 1.0 in 1D, 0.1 in 2D)")
    parser.add_argument("--max_iter",  type=int,   default=None,     help="Iteration cap (default 50 in 1D, 500 in 2D)")
    parser.add_argument("--eps",       type=float, default=None,     help="Convergence threshold on (r,r) (default 1e-5 in 1D, 1e-7 in 2D)")
    parser.add_argument("--nloc",      type=int,   default=None,     help="Thread-group size (2D: nloc x nloc)")
    parser.add_argument("--reduction", type=str,   default="single", choices=["single", "hierarchical"], help="Reduction strategy")
    parser.add_argument("--criterion", type=str,   default="absolute", choices=["absolute", "relative"], help="Convergence criterion")
    parser.add_argument("--export",    type=str,   default=None,     help="Export source and solution to Data/<prefix>_*.txt")
    parser.add_argument("--plot",      type=int,   default=0,        help="Plot source, solution and residual history")
    parser.add_argument("--check",     type=int,   default=0,        help="Compare with the float64 CPU reference")
    parser.add_argument("--verbosity", type=int,   default=1,        help="0 silent, 1 summary, 2 per-iteration")
    args = parser.parse_args()

    if args.mode in ("sum", "dot"):
        nloc = args.nloc or 32
        fn = run_sum if args.mode == "sum" else run_dot
        engine, _ = fn(args.size, args.backend, nloc, args.reduction, args.verbosity)
        engine.profiler.print_stats()
    else:
        is2D = args.mode == "cg2d"
        params = CGParams(
            size      = 0 if is2D else args.size,
            width     = args.width  if is2D else 0,
            height    = args.height if is2D else 0,
            max_iter  = args.max_iter if args.max_iter is not None else (500  if is2D else 50),
            eps       = args.eps      if args.eps      is not None else (1e-7 if is2D else 1e-5),
            h         = args.h        if args.h        is not None else (0.1  if is2D else 1.0),
            nloc      = args.nloc,
            reduction = args.reduction,
            criterion = args.criterion,
        ).validate()
        solver, state = run_cg(params, args.backend, args.verbosity, export=args.export, plot=bool(args.plot), check=bool(args.check))
        solver.cl.profiler.print_stats()
