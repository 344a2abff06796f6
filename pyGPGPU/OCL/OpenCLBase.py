import os
import re
import numpy as np
import pyopencl as cl

from . import clUtils as clu
from .errors import GPGPUError, KernelNotFound, MissingKernelBinding, AllocationFailure

# kinds of kernel arguments as returned by parse_kernel_header()
ARG_BUFFER = 0   # __global pointer, bound by buffer name
ARG_PARAM  = 1   # scalar uniform, bound from kernel_params or overrides
ARG_LOCAL  = 2   # __local scratch, sized to the thread group


class OpenCLBase:
    """
    Device execution engine on top of pyopencl.

    This class handles:
    - OpenCL context and queue initialization
    - Program loading, compilation and kernel header extraction
    - Named buffers (`buffer_dict`) and named scalar uniforms (`kernel_params`)
    - Generation of kernel argument lists from the kernel headers
    - `dispatch()` of a named kernel over a 1D or 2D extent split into thread groups

    Every dispatch is followed by `queue.finish()`, so a later dispatch always sees all
    writes of the previous one. Read-back (`fromGPU`) is blocking.

    `CPUBackend` re-implements the device-specific hooks (`build_program`, `get_kernel`,
    `create_buffer`, `write_buffer`, `read_buffer`, `enqueue_kernel`, `finish`) with numpy.
    """

    def __init__(self, nloc=32, device_index=0, preferred_vendor='nvidia', verbosity=0):
        """
        Initialize the OpenCL environment.

        Args:
            nloc (int): Default local work group size for 1D dispatches
            device_index (int): Index of the device to use when the preferred vendor is not found
            preferred_vendor (str): Substring of the device name to prefer
            verbosity (int): 0 silent, 1 summary, 2 device info and per-dispatch detail

        Raises:
            DeviceUnsupported: no OpenCL platform / device available
        """
        self.init_state(nloc=nloc, verbosity=verbosity)
        self.ctx    = clu.select_device(preferred_vendor=preferred_vendor, device_index=device_index, bPrint=verbosity > 1)
        self.device = self.ctx.devices[0]
        if verbosity > 1:
            clu.get_cl_info(self.device)
        self.queue = cl.CommandQueue(self.ctx)
        self.max_work_group_size = int(self.device.max_work_group_size)
        if verbosity > 0:
            print(f"OpenCLBase::__init__() device: {self.device.name} max_work_group_size={self.max_work_group_size}")

    def init_state(self, nloc=32, verbosity=0):
        self.nloc          = nloc
        self.verbosity     = verbosity
        self.buffer_dict   = {}
        self.kernelheaders = {}
        self.kernel_params = {}
        self.kernels       = {}
        self.prg           = None
        self.profiler      = None

    # ------------------------------------------------------------------
    # Program
    # ------------------------------------------------------------------

    def load_program(self, kernel_path=None, rel_path=None, base_path=None, build_options=None, bPrint=False):
        """
        Load and compile a program, and extract its kernel headers.

        Args:
            kernel_path (str): Absolute path to the kernel file
            rel_path (str): Relative path to the kernel file from base_path
            base_path (str): Base directory path (defaults to this file's directory)
            build_options (list): Options passed to the OpenCL compiler

        Returns:
            bool: True if successful, False if the file does not exist
        """
        if kernel_path is None and rel_path is not None:
            if base_path is None:
                base_path = os.path.dirname(os.path.abspath(__file__))
            kernel_path = os.path.abspath(os.path.join(base_path, rel_path))

        if kernel_path is None or not os.path.exists(kernel_path):
            print(f"OpenCLBase::load_program() ERROR: Kernel file not found at: {kernel_path}")
            return False

        with open(kernel_path, 'r') as f:
            source = f.read()
        self.kernelheaders = self.extract_kernel_headers(source)
        self.build_program(source, build_options=build_options)
        if bPrint:
            for kname, header in self.kernelheaders.items():
                print(f"OpenCLBase::load_program() Kernel {kname}::\n{header}")
            print(f"OpenCLBase::load_program() Successfully loaded kernels {list(self.kernelheaders)} from: {kernel_path}")
        return True

    def build_program(self, source, build_options=None):
        try:
            self.prg = cl.Program(self.ctx, source).build(options=build_options or [])
        except cl.Error as e:
            raise MissingKernelBinding(f"OpenCLBase::build_program() compilation failed:\n{e}") from e
        self.kernels = {}

    def get_kernel(self, kname):
        knl = self.kernels.get(kname)
        if knl is not None:
            return knl
        if self.prg is None:
            raise MissingKernelBinding("OpenCLBase::get_kernel() no program loaded, call load_program() first")
        try:
            knl = cl.Kernel(self.prg, kname)
        except cl.Error as e:
            raise KernelNotFound(f"OpenCLBase::get_kernel() kernel '{kname}' not found in program") from e
        self.kernels[kname] = knl
        return knl

    def require_kernels(self, knames):
        """ Raise MissingKernelBinding unless every name in knames is a kernel of the loaded program """
        if self.prg is None:
            raise MissingKernelBinding("OpenCLBase::require_kernels() no program loaded, call load_program() first")
        missing = [k for k in knames if k not in self.kernelheaders]
        if missing:
            raise MissingKernelBinding(f"OpenCLBase::require_kernels() program lacks kernels {missing}; available: {list(self.kernelheaders)}")

    @staticmethod
    def extract_kernel_headers(source_code):
        """
        Extract kernel headers from OpenCL source code.

        Returns:
            dict: kernel name -> header string `__kernel void name( ... )`
        """
        source_code = re.sub(r'/\*.*?\*/', '', source_code, flags=re.S)
        source_code = re.sub(r'//[^\n]*', '', source_code)
        headers = {}
        for m in re.finditer(r'__kernel\s+void\s+(\w+)\s*\(([^)]*)\)', source_code):
            headers[m.group(1)] = f"__kernel void {m.group(1)}({m.group(2)})"
        return headers

    @staticmethod
    def parse_kernel_header(header_string):
        """
        Parse a kernel header into an ordered list of (argument_name, kind),
        kind being ARG_BUFFER, ARG_LOCAL or ARG_PARAM.
        """
        param_block = header_string[header_string.find('(') + 1:header_string.rfind(')')]
        args = []
        for param in param_block.split(','):
            param = ' '.join(param.split())
            if not param:
                continue
            name = param.split()[-1].replace('*', '').strip()
            if '__global' in param:
                args.append((name, ARG_BUFFER))
            elif '__local' in param:
                args.append((name, ARG_LOCAL))
            else:
                args.append((name, ARG_PARAM))
        return args

    def generate_kernel_args(self, kname, overrides=None, local_count=None):
        """
        Generate the argument list of a kernel from its header definition.

        Args:
            kname (str): Kernel name
            overrides (dict): argument name -> buffer name (for __global arguments) or
                              scalar value (for uniforms). Arguments not overridden are
                              taken from buffer_dict / kernel_params under their own name.
            local_count (int): number of work-items per group, sizes __local scratch

        Returns:
            list: arguments in header order
        """
        if kname not in self.kernelheaders:
            raise KernelNotFound(f"OpenCLBase::generate_kernel_args() Kernel '{kname}' not found in kernel headers; available: {list(self.kernelheaders)}")
        overrides = overrides or {}
        args = []
        for aname, kind in self.parse_kernel_header(self.kernelheaders[kname]):
            if kind == ARG_LOCAL:
                args.append(self.make_local_buffer(local_count or self.nloc))
            elif kind == ARG_BUFFER:
                bname = overrides.get(aname, aname)
                if not isinstance(bname, str):
                    args.append(bname)
                    continue
                buf = self.buffer_dict.get(bname)
                if buf is None:
                    raise MissingKernelBinding(f"OpenCLBase::generate_kernel_args() {kname}({aname}): buffer '{bname}' is not allocated")
                args.append(buf)
            else:
                val = overrides[aname] if aname in overrides else self.kernel_params.get(aname)
                if val is None:
                    raise MissingKernelBinding(f"OpenCLBase::generate_kernel_args() {kname}({aname}): uniform not set")
                args.append(val)
        return args

    def set_params(self, **kwargs):
        """ Store scalar uniforms in kernel_params as np.int32 / np.float32 """
        for name, val in kwargs.items():
            if isinstance(val, np.generic):
                self.kernel_params[name] = val
            elif isinstance(val, (bool, int)):
                self.kernel_params[name] = np.int32(val)
            else:
                self.kernel_params[name] = np.float32(val)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def check_local_size(self, local_size, bPow2=False):
        local = clu.as_tuple(local_size)
        count = int(np.prod(local))
        if count <= 0 or count > self.max_work_group_size:
            raise ValueError(f"thread-group size {local} ({count} work-items) exceeds device limit {self.max_work_group_size}")
        if bPow2 and not clu.is_power_of_two(count):
            raise ValueError(f"thread-group size {local} must hold a power-of-two number of work-items")
        return local

    def dispatch(self, kname, extent, local_size=None, overrides=None):
        """
        Run kernel `kname` over `extent` split into groups of `local_size` and wait for it.

        Args:
            kname (str): Kernel name
            extent (int|tuple): problem size (n,) or (width, height)
            local_size (int|tuple): work-items per group per dimension (default self.nloc)
            overrides (dict): see generate_kernel_args()

        Returns:
            tuple: number of groups per dimension, ceil(extent/local_size)
        """
        extent = clu.as_tuple(extent)
        local  = clu.as_tuple(self.nloc if local_size is None else local_size)
        if len(local) != len(extent):
            raise ValueError(f"OpenCLBase::dispatch({kname}) local_size {local} does not match extent {extent}")
        groups      = clu.num_groups(extent, local)
        global_size = tuple(g * l for g, l in zip(groups, local))
        args = self.generate_kernel_args(kname, overrides=overrides, local_count=int(np.prod(local)))
        knl  = self.get_kernel(kname)
        if self.verbosity > 2:
            print(f"OpenCLBase::dispatch() {kname} extent={extent} groups={groups} local={local}")
        if self.profiler is not None:
            self.profiler.start_python(kname)
        self.enqueue_kernel(knl, global_size, local, args)
        self.finish()
        if self.profiler is not None:
            self.profiler.stop_python(kname)
            self.profiler.record_dispatch(kname, groups)
        return groups

    def enqueue_kernel(self, knl, global_size, local_size, args):
        try:
            knl(self.queue, global_size, local_size, *args)
        except cl.Error as e:
            raise GPGPUError(f"OpenCLBase::enqueue_kernel() {knl.function_name} failed: {e}") from e

    def make_local_buffer(self, count):
        return cl.LocalMemory(count * clu.bytePerFloat)

    def finish(self):
        self.queue.finish()

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def create_buffer(self, name, size, flags=cl.mem_flags.READ_WRITE):
        """
        Create a buffer and store it in the buffer dictionary.

        Args:
            name (str): Name of the buffer
            size (int): Size of the buffer in bytes
            flags (cl.mem_flags): Memory flags for the buffer

        Raises:
            AllocationFailure: the device refused the allocation
        """
        if size <= 0:
            raise ValueError(f"Invalid buffer size for {name}: {size}")
        self.release_buffer(name)
        try:
            buffer = cl.Buffer(self.ctx, flags, size=size)
        except cl.Error as e:
            raise AllocationFailure(f"OpenCLBase::create_buffer() '{name}' ({size} bytes) failed: {e}") from e
        self.buffer_dict[name] = buffer
        return buffer

    def buffer_nbytes(self, name):
        return self.buffer_dict[name].size

    def check_buf(self, name, required_size):
        """ Create the buffer if it is missing or its size differs from required_size (bytes) """
        if name not in self.buffer_dict or self.buffer_nbytes(name) != required_size:
            if self.verbosity > 1:
                print(f"OpenCLBase::check_buf() allocating buffer '{name}' with size {required_size} bytes")
            self.create_buffer(name, required_size)
        return self.buffer_dict[name]

    def check_field_sizes(self, names, count):
        """ Raise ValueError unless every named buffer holds exactly `count` floats """
        nbytes = count * clu.bytePerFloat
        for name in names:
            if name not in self.buffer_dict:
                raise MissingKernelBinding(f"OpenCLBase::check_field_sizes() buffer '{name}' is not allocated")
            if self.buffer_nbytes(name) != nbytes:
                raise ValueError(f"OpenCLBase::check_field_sizes() buffer '{name}' has {self.buffer_nbytes(name)} bytes, field of {count} floats needs {nbytes}")

    def release_buffer(self, name):
        buf = self.buffer_dict.pop(name, None)
        if buf is not None:
            buf.release()

    def release_buffers(self, names=None):
        for name in list(self.buffer_dict if names is None else names):
            self.release_buffer(name)

    def toGPU(self, buf_name, host_data, byte_offset=0):
        """
        Upload data to a named buffer (blocking).

        Args:
            buf_name (str): Name of the buffer in the buffer dictionary
            host_data (numpy.ndarray): float32 data to upload
            byte_offset (int): Offset in bytes
        """
        host_data = np.ascontiguousarray(host_data, dtype=np.float32)
        self.write_buffer(self.buffer_dict[buf_name], host_data, byte_offset)
        if self.profiler is not None:
            self.profiler.record_memory_transfer('host_to_device', host_data.nbytes)

    def fromGPU(self, buf_name, host_data, byte_offset=0):
        """
        Download data from a named buffer into host_data (blocking).

        Args:
            buf_name (str): Name of the buffer in the buffer dictionary
            host_data (numpy.ndarray): contiguous float32 array to store the downloaded data
            byte_offset (int): Offset in bytes
        """
        self.read_buffer(self.buffer_dict[buf_name], host_data, byte_offset)
        if self.profiler is not None:
            self.profiler.record_memory_transfer('device_to_host', host_data.nbytes)
        return host_data

    def write_buffer(self, buf, host_data, byte_offset=0):
        cl.enqueue_copy(self.queue, buf, host_data, device_offset=byte_offset, is_blocking=True)

    def read_buffer(self, buf, host_data, byte_offset=0):
        cl.enqueue_copy(self.queue, host_data, buf, device_offset=byte_offset, is_blocking=True)
