import numpy as np
import pyopencl as cl

from .errors import DeviceUnsupported

bytePerFloat = 4


def get_platforms():
    # pyopencl raises (PLATFORM_NOT_FOUND_KHR) instead of returning [] when no ICD is installed
    try:
        return cl.get_platforms()
    except cl.Error:
        return []

def print_devices(platforms=None):
    if platforms is None:
        platforms = get_platforms()
    for i, platform in enumerate(platforms):
        print(f"Platform {i}: {platform.name}")
        for j, device in enumerate(platform.get_devices()):
            print(f"  Device {j}: {device.name}")

def select_device(platforms=None, preferred_vendor='nvidia', bPrint=False, device_index=0):
    """
    Create an OpenCL context on the preferred vendor's device, or on the device_index-th
    device of all platforms when the preferred vendor is not present.

    Raises:
        DeviceUnsupported: when there is no platform or no device at all.
    """
    if platforms is None:
        platforms = get_platforms()
    if bPrint:
        print_devices(platforms)
    devices = []
    for platform in platforms:
        try:
            devices += platform.get_devices()
        except cl.Error:
            continue
    if not devices:
        raise DeviceUnsupported("No OpenCL compute device found (is an OpenCL ICD installed?)")
    preferred = [d for d in devices if preferred_vendor and preferred_vendor.lower() in d.name.lower()]
    if preferred:
        device = preferred[0]
        if bPrint: print(f"Selected {preferred_vendor} device: {device.name}")
    else:
        if device_index >= len(devices):
            raise DeviceUnsupported(f"device_index={device_index} but only {len(devices)} OpenCL devices found")
        device = devices[device_index]
        if bPrint: print(f"Selected default device {device_index}: {device.name}")
    return cl.Context([device])

def get_cl_info(device):
    print(f"Device Name: {device.name}")
    print(f"Max Compute Units: {device.max_compute_units}")
    print(f"Max Work Group Size: {device.max_work_group_size}")
    print(f"Global Memory Size: {device.global_mem_size / (1024*1024)} MB")
    print(f"Local Memory Size: {device.local_mem_size / 1024} KB")
    print(f"Max Clock Frequency: {device.max_clock_frequency} MHz")

################################################################################

def as_tuple(ns):
    if np.ndim(ns) == 0:
        return (int(ns),)
    return tuple(int(n) for n in ns)

def is_power_of_two(n):
    return n > 0 and (n & (n - 1)) == 0

def num_groups(extent, local_size):
    """ ceil(extent/local_size) per dimension """
    return tuple((n + l - 1) // l for n, l in zip(as_tuple(extent), as_tuple(local_size)))

def roundup_global_size(extent, local_size):
    return tuple(g * l for g, l in zip(num_groups(extent, local_size), as_tuple(local_size)))

def extent_params(extent):
    """ Uniforms describing a field extent, keyed by the kernel argument names (n) or (width, height) """
    extent = as_tuple(extent)
    if len(extent) == 1:
        return {'n': np.int32(extent[0])}
    if len(extent) == 2:
        return {'width': np.int32(extent[0]), 'height': np.int32(extent[1])}
    raise ValueError(f"Only 1D and 2D fields are supported, got extent {extent}")

def local_size_for(extent, nloc):
    """ Expand scalar thread-group size to the dimensionality of extent ( 2D: nloc x nloc ) """
    extent = as_tuple(extent)
    local  = as_tuple(nloc)
    if len(local) == 1 and len(extent) == 2:
        local = (local[0], local[0])
    if len(local) != len(extent):
        raise ValueError(f"thread-group size {local} does not match field dimensionality {extent}")
    return local
