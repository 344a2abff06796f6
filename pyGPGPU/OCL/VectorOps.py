import numpy as np

from . import clUtils as clu


class VectorOps:
    """Elementwise field kernels: copy, z = alpha*x + y, fill. Arguments are buffer names."""

    def __init__(self, cl, extent, local_size=None):
        self.cl = cl
        self.realloc(extent, local_size)

    def realloc(self, extent, local_size=None):
        self.extent     = clu.as_tuple(extent)
        self.local_size = clu.local_size_for(self.extent, self.cl.nloc if local_size is None else local_size)
        self.cl.check_local_size(self.local_size)
        self.n          = int(np.prod(self.extent))
        self.is2D       = len(self.extent) == 2
        self.cl.set_params(**clu.extent_params(self.extent))

    def copy(self, dst, src):
        """ dst[i] = src[i] """
        self.cl.check_field_sizes((dst, src), self.n)
        kname = 'copyVector2D' if self.is2D else 'copyVector'
        self.cl.dispatch(kname, self.extent, self.local_size, overrides={'x': src, 'y': dst})

    def scaled_add(self, z, alpha, x, y):
        """ z[i] = alpha*x[i] + y[i] ; z may alias x or y """
        self.cl.check_field_sizes((z, x, y), self.n)
        kname = 'Szaxpy2D' if self.is2D else 'Szaxpy'
        self.cl.dispatch(kname, self.extent, self.local_size, overrides={'z': z, 'alpha': np.float32(alpha), 'x': x, 'y': y})

    def fill(self, dst, value):
        self.cl.check_field_sizes((dst,), self.n)
        self.cl.dispatch('setData', (self.n,), (int(np.prod(self.local_size)),),
                         overrides={'data': dst, 'n': np.int32(self.n), 'value': np.float32(value)})
