import numpy as np

from . import clUtils as clu

STRATEGIES = ('single', 'hierarchical')


class ParallelReduction:
    """
    Dot products and sums of device fields through per-group partial sums.

    One dispatch of `dotProduct` / `dotProduct2D` / `reduceSum` leaves one partial sum per
    thread group in buffer `partialA`. Then

        single       : all nGroups partials are read back and summed on the host
        hierarchical : `reduceSum` is dispatched over the partials (ping-pong partialA/partialB),
                       nk -> ceil(nk/nloc) per pass, until one group remains; only that one
                       float is read back

    The thread group must hold a power-of-two number of work-items (tree reduction in
    __local memory).
    """

    def __init__(self, cl, extent, local_size=None, strategy='single', verbosity=0, prefix=''):
        if strategy not in STRATEGIES:
            raise ValueError(f"ParallelReduction() unknown strategy '{strategy}', expected one of {STRATEGIES}")
        self.cl        = cl
        self.strategy  = strategy
        self.verbosity = verbosity
        self.bufA      = prefix + 'partialA'
        self.bufB      = prefix + 'partialB'
        self.realloc(extent, local_size)

    def realloc(self, extent, local_size=None):
        """ (Re-)compute group counts for extent and (re-)allocate the partial-result buffers """
        self.extent     = clu.as_tuple(extent)
        self.local_size = clu.local_size_for(self.extent, self.cl.nloc if local_size is None else local_size)
        self.cl.check_local_size(self.local_size, bPow2=True)
        self.nloc_flat  = int(np.prod(self.local_size))
        self.n          = int(np.prod(self.extent))
        self.groups     = clu.num_groups(self.extent, self.local_size)
        self.nGroups    = int(np.prod(self.groups))
        self.partial    = np.zeros(self.nGroups, dtype=np.float32)
        self.cl.check_buf(self.bufA, self.nGroups * clu.bytePerFloat)
        self.cl.check_buf(self.bufB, self.nGroups * clu.bytePerFloat)
        if self.verbosity > 1:
            print(f"ParallelReduction::realloc() extent={self.extent} local={self.local_size} nGroups={self.nGroups} strategy={self.strategy}")

    def release(self):
        self.cl.release_buffers([self.bufA, self.bufB])

    def dot(self, a, b):
        """ sum_i a[i]*b[i] over the configured extent; a, b are buffer names """
        self.cl.check_field_sizes((a, b), self.n)
        if len(self.extent) == 1:
            self.cl.dispatch('dotProduct', self.extent, self.local_size,
                             overrides={'a': a, 'b': b, 'partial': self.bufA, 'n': np.int32(self.n)})
        else:
            self.cl.dispatch('dotProduct2D', self.extent, self.local_size,
                             overrides={'a': a, 'b': b, 'partial': self.bufA,
                                        'width': np.int32(self.extent[0]), 'height': np.int32(self.extent[1])})
        return self.finalize(self.nGroups)

    def sum(self, a):
        """ sum_i a[i], i.e. dot(a, ones) """
        self.cl.check_field_sizes((a,), self.n)
        groups = self.cl.dispatch('reduceSum', (self.n,), (self.nloc_flat,),
                                  overrides={'data': a, 'partial': self.bufA, 'n': np.int32(self.n)})
        return self.finalize(groups[0])

    def finalize(self, nk):
        if self.strategy == 'hierarchical':
            return self.reduce_hierarchical(nk)
        return self.reduce_single(nk)

    def reduce_single(self, nk):
        host = self.partial[:nk]
        self.cl.fromGPU(self.bufA, host)
        return float(host.sum(dtype=np.float32))

    def reduce_hierarchical(self, nk):
        src, dst = self.bufA, self.bufB
        npass = 0
        while nk > 1:
            groups = self.cl.dispatch('reduceSum', (nk,), (self.nloc_flat,),
                                      overrides={'data': src, 'partial': dst, 'n': np.int32(nk)})
            nk = groups[0]
            src, dst = dst, src
            npass += 1
        if self.verbosity > 2:
            print(f"ParallelReduction::reduce_hierarchical() {npass} extra passes")
        host = self.partial[:1]
        self.cl.fromGPU(src, host)
        return float(host[0])
