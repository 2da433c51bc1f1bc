"""
Worker pool that runs one simulation phase at a time.

Every scheduled kernel takes (offset, worker) as its first two arguments.
Particle passes are cut into contiguous particle ranges and node passes into
x-slabs; waiting on every chunk of a pass is the barrier between phases.

On CPU each worker scatters into its own partial grid (index = worker), so
n_partials == n_workers. On CUDA a single launch covers the whole pass and
scatters with atomics into partial 0.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import warp as wp


def split_range(count, n_chunks):
    """Contiguous (offset, length) chunks covering range(count), empty chunks dropped."""
    n_chunks = max(1, min(int(n_chunks), int(count)))
    bounds = np.linspace(0, count, n_chunks + 1).astype(np.int64)
    return [(int(lo), int(hi - lo)) for lo, hi in zip(bounds[:-1], bounds[1:]) if hi > lo]


class PhaseScheduler:
    def __init__(self, device="cpu", n_workers=1):
        if int(n_workers) < 1:
            raise ValueError(f"Number of workers must be >= 1, got {n_workers}")
        self.device = wp.get_device(device)
        self.is_cuda = self.device.is_cuda
        self.n_workers = 1 if self.is_cuda else int(n_workers)
        self.n_partials = self.n_workers
        self._pool = ThreadPoolExecutor(max_workers=self.n_workers) if self.n_workers > 1 else None
        # kernels that already ran once; the first pass of each runs on the
        # calling thread so module compilation never happens concurrently
        self._warm = set()

    def particle_pass(self, kernel, n_particles, inputs):
        self._run(kernel, split_range(n_particles, self.n_workers), inputs)

    def node_pass(self, kernel, grid_dims, inputs):
        nx, ny, nz = grid_dims
        chunks = [(offset, (count, ny, nz)) for offset, count in split_range(nx, self.n_workers)]
        self._run(kernel, chunks, inputs)

    def _launch(self, kernel, offset, worker, dim, inputs):
        wp.launch(kernel=kernel, dim=dim, inputs=[offset, worker] + list(inputs), device=self.device)

    def _run(self, kernel, chunks, inputs):
        if not chunks:
            return
        if self._pool is None or len(chunks) == 1 or kernel.key not in self._warm:
            for worker, (offset, dim) in enumerate(chunks):
                self._launch(kernel, offset, worker, dim, inputs)
            self._warm.add(kernel.key)
        else:
            futures = [
                self._pool.submit(self._launch, kernel, offset, worker, dim, inputs)
                for worker, (offset, dim) in enumerate(chunks)
            ]
            # barrier; result() re-raises a worker's exception in the caller
            for future in futures:
                future.result()
        if self.is_cuda:
            wp.synchronize_device(self.device)

    def close(self):
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
