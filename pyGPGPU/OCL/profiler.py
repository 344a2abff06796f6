import time


class DispatchProfiler:
    """
    Wall-clock timers, dispatch counters and transfer counters for an engine.

    Attach with `engine.profiler = DispatchProfiler()`; OpenCLBase.dispatch() and
    toGPU()/fromGPU() record into it.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.python_timers   = {}
        self.python_active   = {}
        self.dispatch_counts = {}
        self.group_counts    = {}
        self.memory_transfers = {
            'host_to_device': 0,
            'device_to_host': 0,
        }
        self.readbacks = 0

    def start_python(self, name):
        self.python_active[name] = time.perf_counter()

    def stop_python(self, name):
        t0 = self.python_active.pop(name, None)
        if t0 is None:
            return 0.0
        elapsed = time.perf_counter() - t0
        self.python_timers[name] = self.python_timers.get(name, 0.0) + elapsed
        return elapsed

    def record_dispatch(self, kname, groups):
        ng = 1
        for g in groups:
            ng *= g
        self.dispatch_counts[kname] = self.dispatch_counts.get(kname, 0) + 1
        self.group_counts[kname]    = self.group_counts.get(kname, 0) + ng

    def record_memory_transfer(self, direction, size_bytes):
        self.memory_transfers[direction] += size_bytes
        if direction == 'device_to_host':
            self.readbacks += 1

    def total_dispatches(self):
        return sum(self.dispatch_counts.values())

    def print_stats(self):
        print("\n===== DISPATCH PROFILING STATISTICS =====\n")
        if self.python_timers:
            total = sum(self.python_timers.values())
            print("Kernels (wall clock incl. queue.finish):")
            for name, elapsed in sorted(self.python_timers.items(), key=lambda x: x[1], reverse=True):
                count = self.dispatch_counts.get(name, 0)
                avg   = elapsed / count if count else 0.0
                print(f"  {name:30s}: {elapsed:.4f}s ({elapsed/total*100 if total > 0 else 0.0:.1f}%) - {count} calls, avg: {avg:.6f}s")
            print(f"  {'Total':30s}: {total:.4f}s\n")
        if self.dispatch_counts:
            print(f"Dispatches ({self.total_dispatches()} total):")
            for name, count in sorted(self.dispatch_counts.items(), key=lambda x: x[1], reverse=True):
                print(f"  {name:30s}: {count} calls, {self.group_counts.get(name, 0)} thread groups")
            print()
        print("Memory Transfers:")
        print(f"  {'Host to Device':30s}: {self.memory_transfers['host_to_device']} B")
        print(f"  {'Device to Host':30s}: {self.memory_transfers['device_to_host']} B in {self.readbacks} read-backs\n")
