from .OpenCLBase import OpenCLBase
from .CPUBackend import CPUBackend
from .errors import DeviceUnsupported

BACKENDS = ('auto', 'opencl', 'cpu')


def make_backend(kind='auto', nloc=32, device_index=0, verbosity=0):
    """
    Create a device execution engine.

    kind:
        'opencl' : OpenCLBase, raises DeviceUnsupported without an OpenCL device
        'cpu'    : CPUBackend (numpy)
        'auto'   : OpenCL when available, otherwise CPUBackend
        engine instance : returned unchanged
    """
    if isinstance(kind, OpenCLBase):
        return kind
    if kind == 'opencl':
        return OpenCLBase(nloc=nloc, device_index=device_index, verbosity=verbosity)
    if kind == 'cpu':
        return CPUBackend(nloc=nloc, verbosity=verbosity)
    if kind == 'auto':
        try:
            return OpenCLBase(nloc=nloc, device_index=device_index, verbosity=verbosity)
        except DeviceUnsupported as e:
            if verbosity > 0:
                print(f"make_backend() {e} => falling back to CPUBackend")
            return CPUBackend(nloc=nloc, verbosity=verbosity)
    raise ValueError(f"make_backend() unknown backend '{kind}', expected one of {BACKENDS}")
