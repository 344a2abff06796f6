"""OpenCL (pyopencl) drivers and the numpy CPU backend sharing the same kernel interface."""
