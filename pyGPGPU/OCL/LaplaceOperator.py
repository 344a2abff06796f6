import numpy as np

from . import clUtils as clu


class LaplaceOperator:
    """
    Matrix-free discrete operator L = -Laplacian / h^2 (3-point stencil in 1D, 5-point in 2D).

    L is symmetric positive definite: neighbours outside the domain are read as 0
    (homogeneous Dirichlet boundary), so

        1D:  Lv[i]   = ( 2 v[i]   - v[i-1] - v[i+1] ) / h^2
        2D:  Lv[x,y] = ( 4 v[x,y] - v[x-1,y] - v[x+1,y] - v[x,y-1] - v[x,y+1] ) / h^2
    """

    def __init__(self, cl, extent, h=1.0, local_size=None):
        self.cl = cl
        self.realloc(extent, local_size)
        self.set_spacing(h)

    def realloc(self, extent, local_size=None):
        self.extent     = clu.as_tuple(extent)
        self.local_size = clu.local_size_for(self.extent, self.cl.nloc if local_size is None else local_size)
        self.cl.check_local_size(self.local_size)
        self.kname      = 'LpMV' if len(self.extent) == 2 else 'LpMV1'
        self.cl.set_params(**clu.extent_params(self.extent))

    def set_spacing(self, h):
        if not h > 0:
            raise ValueError(f"LaplaceOperator::set_spacing() grid spacing must be positive, got {h}")
        self.h = float(h)
        self.cl.set_params(h=np.float32(h))

    def apply(self, Lv, v):
        """ Lv = L v ; Lv and v are distinct buffer names """
        if Lv == v:
            raise ValueError(f"LaplaceOperator::apply() output '{Lv}' must not alias the input (stencil reads neighbours)")
        self.cl.check_field_sizes((Lv, v), int(np.prod(self.extent)))
        self.cl.dispatch(self.kname, self.extent, self.local_size, overrides={'Lv': Lv, 'v': v})
