"""pyGPGPU - parallel reduction and Conjugate-Gradient Poisson solver on OpenCL."""
