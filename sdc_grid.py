"""
Process grid and random-generation context for the SDC recursion.

Storage model: every process of the grid holds the full working matrix
(replicated). Work that is split across processes (partition sums) is
combined with an all-reduce; the base-case solve runs on the grid root and
its result is broadcast back. Every randomized decision is drawn on the root
and broadcast, so all processes issue the same sequence of collectives.

Only the O(n^2) partition sums are divided among processes; every rank
repeats the O(n^3) sign iteration, QR and GEMM work on its replica. The
process-group mode therefore keeps the ranks consistent with each other but
does not make a single decomposition faster.

Without an initialized torch.distributed default group the grid is the
trivial one-process grid and every collective is a no-op.
"""
from __future__ import annotations

import logging
import math
import os

import torch
import torch.distributed as dist


logger = logging.getLogger(__name__)

_REAL_DTYPE = {torch.complex64: torch.float32, torch.complex128: torch.float64}


class Grid:
    """A process group plus the root rank (group-local) used for draws and base-case solves."""

    def __init__(self, group=None, root: int = 0):
        self.group = group
        self.root = root

    @property
    def initialized(self) -> bool:
        return dist.is_available() and dist.is_initialized()

    @property
    def size(self) -> int:
        if not self.initialized:
            return 1
        return dist.get_world_size(self.group)

    @property
    def rank(self) -> int:
        if not self.initialized:
            return 0
        return dist.get_rank(self.group)

    @property
    def distributed(self) -> bool:
        return self.size > 1

    @property
    def is_root(self) -> bool:
        return self.rank == self.root

    @property
    def comm_device(self) -> torch.device:
        # gloo moves host tensors, nccl device tensors.
        if self.initialized and dist.get_backend(self.group) == "nccl":
            return torch.device("cuda", torch.cuda.current_device())
        return torch.device("cpu")

    def _global_root(self) -> int:
        if self.group is None:
            return self.root
        return dist.get_global_rank(self.group, self.root)

    def owned_columns(self, n: int) -> torch.Tensor:
        """Column indices this process accumulates (cyclic distribution)."""
        return torch.arange(self.rank, n, self.size)

    def _staged(self, tensor: torch.Tensor) -> torch.Tensor:
        staging = tensor.to(self.comm_device).contiguous()
        return torch.view_as_real(staging) if staging.is_complex() else staging

    def broadcast_(self, tensor: torch.Tensor) -> torch.Tensor:
        """Overwrite `tensor` on every process with the root's copy."""
        if not self.distributed:
            return tensor
        staging = self._staged(tensor)
        dist.broadcast(staging, src=self._global_root(), group=self.group)
        if staging.data_ptr() != tensor.data_ptr():
            src = torch.view_as_complex(staging) if tensor.is_complex() else staging
            tensor.copy_(src)
        return tensor

    def all_reduce_(self, tensor: torch.Tensor) -> torch.Tensor:
        """Sum `tensor` over every process of the grid, in place."""
        if not self.distributed:
            return tensor
        staging = self._staged(tensor)
        dist.all_reduce(staging, op=dist.ReduceOp.SUM, group=self.group)
        if staging.data_ptr() != tensor.data_ptr():
            src = torch.view_as_complex(staging) if tensor.is_complex() else staging
            tensor.copy_(src)
        return tensor

    def solve_on_root_(self, fn, *outputs: torch.Tensor) -> None:
        """Run `fn` on the root only, then broadcast every output buffer it wrote."""
        if self.is_root:
            fn()
        for t in outputs:
            self.broadcast_(t)

    def __repr__(self) -> str:
        return f"Grid(rank={self.rank}, size={self.size}, root={self.root})"


def init_grid_from_env(backend: str | None = None) -> Grid:
    """Initialize the default process group from torchrun's environment and return its grid."""
    if "RANK" not in os.environ or "WORLD_SIZE" not in os.environ:
        raise RuntimeError("RANK/WORLD_SIZE not set; launch with torchrun")
    if not dist.is_initialized():
        if backend is None:
            backend = "nccl" if torch.cuda.is_available() else "gloo"
        dist.init_process_group(backend=backend)
        if backend == "nccl":
            torch.cuda.set_device(int(os.environ.get("LOCAL_RANK", 0)))
    grid = Grid()
    logger.info("initialized %r (backend=%s)", grid, dist.get_backend())
    return grid


class RandomContext:
    """
    Seeded random source owned by one branch of the recursion.

    Draws are made on the grid root and broadcast. `spawn()` derives an
    independent child context, so sibling branches never share generator state.
    """

    def __init__(self, seed: int | None = None, *, grid: Grid | None = None):
        self.grid = grid if grid is not None else Grid()
        if seed is None:
            seed = int(torch.randint(0, 2 ** 62, (1,)).item()) if self.grid.is_root else 0
        seed_t = torch.tensor([int(seed)], dtype=torch.int64)
        self.grid.broadcast_(seed_t)
        self.seed = int(seed_t.item())
        self.generator = torch.Generator(device="cpu")
        self.generator.manual_seed(self.seed)

    def _uniform(self, count: int) -> torch.Tensor:
        u = torch.zeros((count,), dtype=torch.float64)
        if self.grid.is_root:
            u.uniform_(0.0, 1.0, generator=self.generator)
        return self.grid.broadcast_(u)

    def spawn(self) -> "RandomContext":
        seed = torch.zeros((1,), dtype=torch.int64)
        if self.grid.is_root:
            seed = torch.randint(0, 2 ** 62, (1,), generator=self.generator)
        self.grid.broadcast_(seed)
        return RandomContext(int(seed.item()), grid=self.grid)

    def uniform(self, low: float, high: float) -> float:
        u = float(self._uniform(1)[0])
        return low + (high - low) * u

    def sample_ball(self, center, radius: float, *, complex_field: bool):
        """Uniform sample from the disk (complex) or interval (real) of `radius` around `center`."""
        if not complex_field:
            u = float(self._uniform(1)[0])
            return float(center.real if isinstance(center, complex) else center) + radius * (2.0 * u - 1.0)
        u = self._uniform(2)
        r = radius * math.sqrt(float(u[0]))
        theta = 2.0 * math.pi * float(u[1])
        return complex(center) + complex(r * math.cos(theta), r * math.sin(theta))

    def unit_phase(self) -> complex:
        theta = 2.0 * math.pi * float(self._uniform(1)[0])
        return complex(math.cos(theta), math.sin(theta))

    def gaussian(self, shape, *, dtype: torch.dtype, device=None) -> torch.Tensor:
        """Standard (real or circular complex) Gaussian matrix, identical on every process."""
        real = _REAL_DTYPE.get(dtype, dtype)
        if dtype.is_complex:
            X = torch.zeros(tuple(shape) + (2,), dtype=real)
            if self.grid.is_root:
                X.normal_(0.0, math.sqrt(0.5), generator=self.generator)
            self.grid.broadcast_(X)
            X = torch.view_as_complex(X)
        else:
            X = torch.zeros(tuple(shape), dtype=real)
            if self.grid.is_root:
                X.normal_(generator=self.generator)
            self.grid.broadcast_(X)
        return X.to(device=device) if device is not None else X

    def __repr__(self) -> str:
        return f"RandomContext(seed={self.seed})"
