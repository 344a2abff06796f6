"""
Brute-force float64 host references for the device kernels and the CG solver.

Used to check device results (tests, `run_poisson.py --check`); not meant to be fast.
"""

import numpy as np


def dot_cpu(a, b):
    return float(np.dot(np.asarray(a, dtype=np.float64).ravel(), np.asarray(b, dtype=np.float64).ravel()))

def sum_cpu(a):
    return float(np.sum(np.asarray(a, dtype=np.float64)))

def laplacian1d_cpu(v, h=1.0):
    """ (2 v[i] - v[i-1] - v[i+1]) / h^2 with zero outside the domain """
    vp = np.zeros(len(v) + 2)
    vp[1:-1] = v
    return (2.0 * vp[1:-1] - vp[:-2] - vp[2:]) / (h * h)

def laplacian2d_cpu(v, h=1.0):
    """ 5-point stencil on v of shape (height, width), zero outside the domain """
    v  = np.asarray(v, dtype=np.float64)
    vp = np.zeros((v.shape[0] + 2, v.shape[1] + 2))
    vp[1:-1, 1:-1] = v
    return (4.0 * v - vp[1:-1, :-2] - vp[1:-1, 2:] - vp[:-2, 1:-1] - vp[2:, 1:-1]) / (h * h)

def laplacian_cpu(v, h=1.0):
    v = np.asarray(v, dtype=np.float64)
    return laplacian2d_cpu(v, h) if v.ndim == 2 else laplacian1d_cpu(v, h)

def cg_cpu(b, h=1.0, v0=None, max_iter=1000, eps=1e-12):
    """
    Plain CG for L v = b (L = -Laplacian/h^2, Dirichlet zero), with the same absolute
    criterion (r,r) < eps as the device solver.

    Returns:
        (v, niter, rkrk)
    """
    b = np.asarray(b, dtype=np.float64)
    v = np.zeros_like(b) if v0 is None else np.array(v0, dtype=np.float64)
    r = b - laplacian_cpu(v, h)
    p = r.copy()
    rr = np.vdot(r, r)
    for itr in range(max_iter):
        if rr < eps:
            return v, itr, rr
        Lp = laplacian_cpu(p, h)
        alpha = rr / np.vdot(p, Lp)
        v += alpha * p
        r -= alpha * Lp
        rr_new = np.vdot(r, r)
        p = r + (rr_new / rr) * p
        rr = rr_new
    return v, max_iter, rr
