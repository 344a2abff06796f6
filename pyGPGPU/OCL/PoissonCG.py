#
#  Solve the Poisson equation  L v = b  with the Conjugate Gradient method
#
#  L  : -Laplacian / h^2 (matrix-free, LaplaceOperator)
#  v  : solution vector,  b : source term
#
#  Initialization
#    set initial guess v0
#    r0 = b - L v0
#    p0 = r0
#  Iteration (until converged)
#    alpha = (rk,rk)/(pk,L pk)
#    vk1   = vk + alpha pk
#    rk1   = rk - alpha L pk
#    beta  = (rk1,rk1)/(rk,rk)
#    pk1   = rk1 + beta pk
#

import math
import os
import time
from dataclasses import dataclass, field, fields
from enum import Enum

import numpy as np

from . import clUtils as clu
from .backends import make_backend
from .errors import AllocationFailure, MissingKernelBinding
from .LaplaceOperator import LaplaceOperator
from .Reduction import ParallelReduction, STRATEGIES
from .VectorOps import VectorOps

CRITERIA = ('absolute', 'relative')

_PARAM_ALIASES = {
    'maxIter':         'max_iter',
    'delta':           'h',
    'threadsPerGroup': 'nloc',
}


class SolverStatus(Enum):
    RUNNING                = 'running'
    CONVERGED              = 'converged'
    MAX_ITERATIONS_REACHED = 'max_iterations_reached'
    DEGENERATE             = 'degenerate'


@dataclass
class SolverState:
    status:     SolverStatus = SolverStatus.RUNNING
    iterations: int          = 0
    rkrk:       float        = float('nan')
    history:    list         = field(default_factory=list)

    @property
    def converged(self):
        return self.status is SolverStatus.CONVERGED


@dataclass
class CGParams:
    """
    Problem and solver configuration.

    1D problems set `size`, 2D problems set `width` and `height`.
    `nloc` is the thread-group size: int for 1D; int (square group) or (lx, ly) for 2D.
    `eps` is compared with (r,r) ('absolute') or with (r,r)/(b,b) ('relative').
    """
    size:      int   = 0
    width:     int   = 0
    height:    int   = 0
    max_iter:  int   = 50
    eps:       float = 1e-5
    h:         float = 1.0
    nloc:      object = None
    reduction: str   = 'single'
    criterion: str   = 'absolute'

    @classmethod
    def from_dict(cls, d):
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for key, val in d.items():
            key = _PARAM_ALIASES.get(key, key)
            if key not in names:
                raise ValueError(f"CGParams.from_dict() unknown option '{key}'")
            kwargs[key] = val
        return cls(**kwargs)

    @property
    def is2D(self):
        return self.width > 0 or self.height > 0

    @property
    def extent(self):
        return (self.width, self.height) if self.is2D else (self.size,)

    @property
    def local_size(self):
        if self.nloc is None:
            return (16, 16) if self.is2D else (32,)
        return clu.local_size_for(self.extent, self.nloc)

    def validate(self):
        if self.is2D:
            if self.width <= 0 or self.height <= 0:
                raise ValueError(f"CGParams: width and height must be positive, got {self.width}x{self.height}")
            if self.size:
                raise ValueError("CGParams: set either size (1D) or width/height (2D), not both")
        elif self.size <= 0:
            raise ValueError(f"CGParams: size must be positive, got {self.size}")
        if self.max_iter < 0:
            raise ValueError(f"CGParams: max_iter must be >= 0, got {self.max_iter}")
        if not self.eps >= 0:
            raise ValueError(f"CGParams: eps must be >= 0, got {self.eps}")
        if not self.h > 0:
            raise ValueError(f"CGParams: h must be positive, got {self.h}")
        if self.reduction not in STRATEGIES:
            raise ValueError(f"CGParams: reduction must be one of {STRATEGIES}, got '{self.reduction}'")
        if self.criterion not in CRITERIA:
            raise ValueError(f"CGParams: criterion must be one of {CRITERIA}, got '{self.criterion}'")
        if not clu.is_power_of_two(int(np.prod(self.local_size))):
            raise ValueError(f"CGParams: thread-group size {self.local_size} must hold a power-of-two number of work-items")
        return self


class PingPong:
    """Pair of buffers; kernels read `src` and write `dst`, then `swap()`."""

    def __init__(self, a, b):
        self.src = a
        self.dst = b

    def swap(self):
        self.src, self.dst = self.dst, self.src

    @property
    def names(self):
        return (self.src, self.dst)


class PoissonCG:
    """
    Conjugate-Gradient solver for L v = b on a device engine (OpenCLBase or CPUBackend).

    Responsibilities:
        1.  Create the engine, load `cl/poisson.cl`, check the required kernels.
        2.  Allocate all working fields once (`initialize`), release them in `reset`.
        3.  Run the CG iteration (`solve`) as a sequence of dispatches; the only host
            round-trips are the scalar read-backs of the reductions.

    Subclasses define the field layout: PoissonCG1D updates in place, PoissonCG2D
    double-buffers v, r, p.

    The engine and all fields are owned by one solver instance.
    """

    kernel_names = ()
    kernel_path  = os.path.join(os.path.dirname(os.path.abspath(__file__)), "cl", "poisson.cl")

    def __init__(self, params=None, backend='auto', device_index=0, verbosity=1):
        self.params       = self._as_params(params) if params is not None else None
        self.backend      = backend
        self.device_index = device_index
        self.verbosity    = verbosity
        self.cl           = None
        self.initialized  = False
        self.bSource      = False
        self.fields       = {}
        self.state        = SolverState()
        self.elapsed      = 0.0

    @staticmethod
    def _as_params(params):
        if isinstance(params, dict):
            params = CGParams.from_dict(params)
        return params.validate()

    # ------------------------------------------------------------------
    #  Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, params=None):
        """
        Create the engine and allocate all fields for `params` (or the constructor's params).

        Raises:
            DeviceUnsupported, MissingKernelBinding, AllocationFailure, ValueError
        """
        if params is not None:
            self.params = self._as_params(params)
        if self.params is None:
            raise ValueError(f"{type(self).__name__}::initialize() no CGParams given")
        self.check_dimension(self.params)
        if self.initialized:
            self.reset()

        p = self.params
        self.cl = make_backend(self.backend, nloc=p.local_size[0], device_index=self.device_index, verbosity=self.verbosity)
        if not self.cl.load_program(kernel_path=self.kernel_path):
            raise MissingKernelBinding(f"{type(self).__name__}::initialize() kernel program not found: {self.kernel_path}")
        self.cl.require_kernels(self.kernel_names)

        try:
            self.alloc_fields()
            self.vops      = VectorOps      (self.cl, p.extent, p.local_size)
            self.laplace   = LaplaceOperator(self.cl, p.extent, h=p.h, local_size=p.local_size)
            self.reduction = ParallelReduction(self.cl, p.extent, p.local_size, strategy=p.reduction, verbosity=self.verbosity)
        except (AllocationFailure, ValueError):
            self.cl.release_buffers()
            self.fields = {}
            raise
        self.initialized = True
        self.bSource     = False
        self.state       = SolverState()
        if self.verbosity > 0:
            print(f"{type(self).__name__}::initialize() extent={p.extent} local={p.local_size} nGroups={self.reduction.nGroups} fields={list(self.cl.buffer_dict)}")

    def reset(self):
        """ Release all fields (and the engine if this solver created it); initialize() again before use """
        if self.cl is not None:
            self.cl.release_buffers()
            if self.cl is not self.backend:
                self.cl = None
        self.fields      = {}
        self.initialized = False
        self.bSource     = False
        self.state       = SolverState()

    def check_dimension(self, params):
        pass

    def alloc_fields(self):
        raise NotImplementedError

    def name(self, key):
        """ Buffer currently holding field `key` ('v','r','p','b','Lp','Lv') """
        f = self.fields[key]
        return f.src if isinstance(f, PingPong) else f

    def axpy_into(self, key, alpha, x, y):
        """ field[key] <- alpha*field[x] + field[y] """
        raise NotImplementedError

    @property
    def nbytes(self):
        return int(np.prod(self.params.extent)) * clu.bytePerFloat

    @property
    def host_shape(self):
        return (self.params.height, self.params.width) if self.params.is2D else (self.params.size,)

    def _ensure_initialized(self):
        if not self.initialized:
            self.initialize()

    # ------------------------------------------------------------------
    #  Data
    # ------------------------------------------------------------------

    def _upload(self, key, host_data, what):
        data = np.asarray(host_data, dtype=np.float32)
        if data.shape not in (self.host_shape, (int(np.prod(self.params.extent)),)):
            raise ValueError(f"{type(self).__name__}::{what} expected {self.host_shape} values, got shape {data.shape}")
        self.cl.toGPU(self.name(key), data)

    def set_source(self, b):
        self._ensure_initialized()
        self._upload('b', b, 'set_source()')
        self.bSource = True

    def set_initial_guess(self, v0=None):
        """ Upload v0, or zero the solution when v0 is None """
        self._ensure_initialized()
        if v0 is None:
            self.vops.fill(self.name('v'), 0.0)
        else:
            self._upload('v', v0, 'set_initial_guess()')

    def set_test_data(self, value=1.0, radius=None):
        raise NotImplementedError

    def download(self, key):
        """ Read back field `key` (or any buffer name) as a host array """
        self._ensure_initialized()
        bname = self.name(key) if key in self.fields else key
        out = np.empty(self.host_shape, dtype=np.float32)
        return self.cl.fromGPU(bname, out)

    def get_solution(self):
        return self.download('v')

    def residual_norm2(self):
        """ |b - L v|^2 evaluated on the device (overwrites the Lv work field) """
        self._ensure_initialized()
        self.laplace.apply(self.name('Lv'), self.name('v'))
        self.vops.scaled_add(self.name('Lv'), -1.0, self.name('Lv'), self.name('b'))
        return self.reduction.dot(self.name('Lv'), self.name('Lv'))

    # ------------------------------------------------------------------
    #  Solve
    # ------------------------------------------------------------------

    def solve(self, b=None, v0=None, warm_start=False):
        """
        Run one Conjugate-Gradient solve.

        Args:
            b  : source term (host array); keeps the previously set source when None
            v0 : initial guess (host array); zero when None, unless warm_start
            warm_start : start from the current solution instead of zero

        Returns:
            SolverState with status CONVERGED, MAX_ITERATIONS_REACHED or DEGENERATE
        """
        self._ensure_initialized()
        if b is not None:
            self.set_source(b)
        if not self.bSource:
            raise RuntimeError(f"{type(self).__name__}::solve() Call set_source() or set_test_data() before solve()")
        if v0 is not None or not warm_start:
            self.set_initial_guess(v0)
        t0 = time.perf_counter()
        self.state = self.run_cg()
        self.elapsed = time.perf_counter() - t0
        if self.verbosity > 0:
            print(f"{type(self).__name__}::solve() {self.state.status.name} iter={self.state.iterations} rkrk={self.state.rkrk:g} time={self.elapsed*1000:.1f}ms")
        return self.state

    def run_cg(self):
        p   = self.params
        red = self.reduction
        lap = self.laplace
        n   = self.name
        state = SolverState()

        # r0 = b - L v0 ;  p0 = r0
        lap.apply(n('Lv'), n('v'))
        self.axpy_into('r', -1.0, 'Lv', 'b')
        self.vops.copy(n('p'), n('r'))

        threshold = p.eps
        if p.criterion == 'relative':
            threshold = p.eps * red.dot(n('b'), n('b'))

        rk1rk1 = red.dot(n('r'), n('r'))
        for itr in range(p.max_iter):
            rkrk = rk1rk1
            state.iterations = itr
            state.rkrk       = rkrk
            state.history.append(rkrk)
            if self.verbosity > 1:
                print(f"{type(self).__name__}::run_cg() iter {itr:4d} rkrk={rkrk:g}")

            if rkrk < threshold or rkrk == 0.0:
                state.status = SolverStatus.CONVERGED
                return state

            # alpha = (rk,rk)/(pk,L pk)
            lap.apply(n('Lp'), n('p'))
            pLp = red.dot(n('p'), n('Lp'))
            if pLp == 0.0 or not math.isfinite(pLp):
                if self.verbosity > 0:
                    print(f"{type(self).__name__}::run_cg() degenerate search direction at iter {itr}: (p,Lp)={pLp}")
                state.status = SolverStatus.DEGENERATE
                return state
            alpha = rkrk / pLp

            self.axpy_into('v',  alpha, 'p',  'v')   # vk1 = vk + alpha pk
            self.axpy_into('r', -alpha, 'Lp', 'r')   # rk1 = rk - alpha L pk

            # beta = (rk1,rk1)/(rk,rk)
            rk1rk1 = red.dot(n('r'), n('r'))
            beta   = rk1rk1 / rkrk
            self.axpy_into('p', beta, 'p', 'r')      # pk1 = rk1 + beta pk

        state.iterations = p.max_iter
        state.rkrk       = rk1rk1
        state.history.append(rk1rk1)
        state.status     = SolverStatus.MAX_ITERATIONS_REACHED
        return state


class PoissonCG1D(PoissonCG):
    """
    1D solver. v, r, p are updated in place: every update is elementwise, and the only
    stencil dispatch writes Lp, which is never its own input.
    """

    kernel_names = ('setData', 'setInitialData', 'copyVector', 'Szaxpy', 'LpMV1', 'dotProduct', 'reduceSum')

    def check_dimension(self, params):
        if params.is2D:
            raise ValueError("PoissonCG1D needs a 1D problem (size), use PoissonCG2D for width/height")

    def alloc_fields(self):
        self.fields = {'b': 'b', 'v': 'vk', 'r': 'rk', 'p': 'pk', 'Lp': 'Lp', 'Lv': 'Lv'}
        for bname in self.fields.values():
            self.cl.create_buffer(bname, self.nbytes)

    def axpy_into(self, key, alpha, x, y):
        self.vops.scaled_add(self.name(key), alpha, self.name(x), self.name(y))

    def set_test_data(self, value=1.0, radius=None):
        """ v = 0, b = value everywhere """
        self._ensure_initialized()
        self.cl.dispatch('setInitialData', self.params.extent, self.params.local_size,
                         overrides={'vk': self.name('v'), 'b': self.name('b'), 'value': np.float32(value)})
        self.bSource = True


class PoissonCG2D(PoissonCG):
    """
    2D solver with ping-pong pairs (a/b) for v, r, p: an update reads `src`, writes `dst`
    and swaps, so no dispatch reads a field it is overwriting.
    """

    kernel_names = ('setData', 'setSourceAndGuess2D', 'copyVector2D', 'Szaxpy2D', 'LpMV', 'dotProduct2D', 'reduceSum')

    def check_dimension(self, params):
        if not params.is2D:
            raise ValueError("PoissonCG2D needs a 2D problem (width, height), use PoissonCG1D for size")

    def alloc_fields(self):
        self.fields = {
            'b':  'b',
            'v':  PingPong('vka', 'vkb'),
            'r':  PingPong('rka', 'rkb'),
            'p':  PingPong('pka', 'pkb'),
            'Lp': 'Lp',
            'Lv': 'Lv',
        }
        for f in self.fields.values():
            for bname in (f.names if isinstance(f, PingPong) else (f,)):
                self.cl.create_buffer(bname, self.nbytes)

    def axpy_into(self, key, alpha, x, y):
        pair = self.fields[key]
        self.vops.scaled_add(pair.dst, alpha, self.name(x), self.name(y))
        pair.swap()

    def set_test_data(self, value=1.0, radius=None):
        """ v = 0, b = value inside a centred disc (default radius: min(width,height)/8) """
        self._ensure_initialized()
        if radius is None:
            radius = min(self.params.width, self.params.height) / 8.0
        self.cl.dispatch('setSourceAndGuess2D', self.params.extent, self.params.local_size,
                         overrides={'vk': self.name('v'), 'b': self.name('b'),
                                    'value': np.float32(value), 'radius': np.float32(radius)})
        self.bSource = True
