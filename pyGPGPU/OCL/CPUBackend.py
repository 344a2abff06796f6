import numpy as np

from . import clUtils as clu
from .OpenCLBase import OpenCLBase
from .errors import KernelNotFound, MissingKernelBinding, AllocationFailure

# ======================================================================
#  numpy twins of the kernels in cl/poisson.cl
#  signature: (global_size, local_size, *args in header order)
# ======================================================================

def _group_sums(values, global_size, local_size):
    """ Sum of values inside every work-group; 1D values, or 2D values shaped (height, width) """
    if len(global_size) == 1:
        padded = np.zeros(global_size[0], dtype=np.float32)
        padded[:values.size] = values
        return padded.reshape(-1, local_size[0]).sum(axis=1, dtype=np.float32)
    (gw, gh), (lw, lh) = global_size, local_size
    padded = np.zeros((gh, gw), dtype=np.float32)
    padded[:values.shape[0], :values.shape[1]] = values
    sums = padded.reshape(gh // lh, lh, gw // lw, lw).sum(axis=(1, 3), dtype=np.float32)
    return sums.ravel()

def setData(gs, ls, data, n, value):
    data[:n] = value

def setHarmonic(gs, ls, data, n, value):
    data[:n] = np.float32(value) / np.arange(1, n + 1, dtype=np.float32)

def setInitialData(gs, ls, vk, b, n, value):
    vk[:n] = 0.0
    b[:n]  = value

def setSourceAndGuess2D(gs, ls, vk, b, width, height, value, radius):
    iy, ix = np.mgrid[0:height, 0:width].astype(np.float32)
    dx = ix - np.float32(0.5) * (width  - 1)
    dy = iy - np.float32(0.5) * (height - 1)
    inside = (dx * dx + dy * dy) <= np.float32(radius) * np.float32(radius)
    nxy = width * height
    vk[:nxy] = 0.0
    b[:nxy]  = np.where(inside, np.float32(value), np.float32(0.0)).ravel()

def copyVector(gs, ls, x, y, n):
    y[:n] = x[:n]

def copyVector2D(gs, ls, x, y, width, height):
    copyVector(gs, ls, x, y, width * height)

def Szaxpy(gs, ls, z, alpha, x, y, n):
    z[:n] = np.float32(alpha) * x[:n] + y[:n]

def Szaxpy2D(gs, ls, z, alpha, x, y, width, height):
    Szaxpy(gs, ls, z, alpha, x, y, width * height)

def LpMV1(gs, ls, Lv, v, n, h):
    vp = np.zeros(n + 2, dtype=np.float32)
    vp[1:-1] = v[:n]
    Lv[:n] = (np.float32(2.0) * vp[1:-1] - vp[:-2] - vp[2:]) / (np.float32(h) * np.float32(h))

def LpMV(gs, ls, Lv, v, width, height, h):
    vp = np.zeros((height + 2, width + 2), dtype=np.float32)
    vp[1:-1, 1:-1] = v[:width * height].reshape(height, width)
    lap = np.float32(4.0) * vp[1:-1, 1:-1] - vp[1:-1, :-2] - vp[1:-1, 2:] - vp[:-2, 1:-1] - vp[2:, 1:-1]
    Lv[:width * height] = (lap / (np.float32(h) * np.float32(h))).ravel()

def dotProduct(gs, ls, a, b, partial, scratch, n):
    sums = _group_sums(a[:n] * b[:n], gs, ls)
    partial[:sums.size] = sums

def dotProduct2D(gs, ls, a, b, partial, scratch, width, height):
    nxy  = width * height
    sums = _group_sums((a[:nxy] * b[:nxy]).reshape(height, width), gs, ls)
    partial[:sums.size] = sums

def reduceSum(gs, ls, data, partial, scratch, n):
    sums = _group_sums(data[:n], gs, ls)
    partial[:sums.size] = sums

CPU_KERNELS = {
    'setData':             setData,
    'setHarmonic':         setHarmonic,
    'setInitialData':      setInitialData,
    'setSourceAndGuess2D': setSourceAndGuess2D,
    'copyVector':          copyVector,
    'copyVector2D':        copyVector2D,
    'Szaxpy':              Szaxpy,
    'Szaxpy2D':            Szaxpy2D,
    'LpMV1':               LpMV1,
    'LpMV':                LpMV,
    'dotProduct':          dotProduct,
    'dotProduct2D':        dotProduct2D,
    'reduceSum':           reduceSum,
}


class CPUBackend(OpenCLBase):
    """
    numpy implementation of the OpenCLBase engine interface, for hosts without an OpenCL device.

    Kernel headers are still read from the .cl program so argument binding, group counts and
    partial-result layout are exactly those of the device path. Buffers are flat float32 arrays.
    """

    def __init__(self, nloc=32, verbosity=0, max_work_group_size=1024):
        self.init_state(nloc=nloc, verbosity=verbosity)
        self.ctx    = None
        self.queue  = None
        self.device = None
        self.max_work_group_size = max_work_group_size
        if verbosity > 0:
            print(f"CPUBackend::__init__() numpy backend, max_work_group_size={max_work_group_size}")

    def build_program(self, source, build_options=None):
        self.prg     = CPU_KERNELS
        self.kernels = {}

    def get_kernel(self, kname):
        if self.prg is None:
            raise MissingKernelBinding("CPUBackend::get_kernel() no program loaded, call load_program() first")
        knl = self.prg.get(kname)
        if knl is None or kname not in self.kernelheaders:
            raise KernelNotFound(f"CPUBackend::get_kernel() kernel '{kname}' not found in program")
        return knl

    def enqueue_kernel(self, knl, global_size, local_size, args):
        knl(global_size, local_size, *args)

    def make_local_buffer(self, count):
        return None

    def finish(self):
        pass

    def create_buffer(self, name, size, flags=None):
        if size <= 0:
            raise ValueError(f"Invalid buffer size for {name}: {size}")
        if size % clu.bytePerFloat:
            raise ValueError(f"CPUBackend::create_buffer() '{name}' size {size} is not a multiple of sizeof(float)")
        self.release_buffer(name)
        try:
            buffer = np.zeros(size // clu.bytePerFloat, dtype=np.float32)
        except MemoryError as e:
            raise AllocationFailure(f"CPUBackend::create_buffer() '{name}' ({size} bytes) failed") from e
        self.buffer_dict[name] = buffer
        return buffer

    def buffer_nbytes(self, name):
        return self.buffer_dict[name].nbytes

    def release_buffer(self, name):
        self.buffer_dict.pop(name, None)

    def write_buffer(self, buf, host_data, byte_offset=0):
        data = host_data.reshape(-1)
        i0 = byte_offset // clu.bytePerFloat
        if i0 + data.size > buf.size:
            raise ValueError(f"CPUBackend::write_buffer() {data.size} floats at offset {i0} overflow buffer of {buf.size}")
        buf[i0:i0 + data.size] = data

    def read_buffer(self, buf, host_data, byte_offset=0):
        i0 = byte_offset // clu.bytePerFloat
        if i0 + host_data.size > buf.size:
            raise ValueError(f"CPUBackend::read_buffer() {host_data.size} floats at offset {i0} overflow buffer of {buf.size}")
        np.copyto(host_data, buf[i0:i0 + host_data.size].reshape(host_data.shape))
