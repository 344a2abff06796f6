"""Failures raised by the device execution engine and the solvers built on it.

Numerical outcomes of an iteration (degenerate search direction, iteration cap) are not
exceptions; they are reported through `PoissonCG.SolverStatus`.
"""


class GPGPUError(RuntimeError):
    """Base class of all device / kernel failures."""


class DeviceUnsupported(GPGPUError):
    """No OpenCL platform or compute device is available."""


class KernelNotFound(GPGPUError):
    """The requested kernel name does not exist in the loaded program."""


class MissingKernelBinding(GPGPUError):
    """A program was not loaded, or a kernel argument has no bound buffer / uniform."""


class AllocationFailure(GPGPUError):
    """A device buffer could not be created."""
