"""
One spectral split of a dense matrix: a random shift near the Gershgorin
center (plus a random rotation for complex matrices) followed by a
randomized sign divide.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import torch

from sdc_grid import Grid, RandomContext
from sdc_partition import balanced_partition, one_norm
from sdc_sign import (
    SIGN_SCALINGS,
    SplitOutcome,
    SplitStatus,
    TransformMode,
    default_rel_tol,
    randomized_sign_divide_,
    sign_divide_,
)


logger = logging.getLogger(__name__)

EXHAUSTED_POLICIES = ("fallback", "warn", "ignore", "raise")


@dataclass
class SDCConfig:
    max_its: int = 10
    rel_tol: float | None = None
    randomized: bool = True
    on_exhausted: str = "fallback"
    sign_max_its: int = 100
    sign_tol: float | None = None
    sign_scaling: str = "frobenius"
    shift_radius: float = 1e-3
    block_size: int = 32

    def __post_init__(self):
        if self.max_its < 1:
            raise ValueError(f"max_its must be >= 1, got {self.max_its}")
        if self.sign_max_its < 1:
            raise ValueError(f"sign_max_its must be >= 1, got {self.sign_max_its}")
        if self.on_exhausted not in EXHAUSTED_POLICIES:
            raise ValueError(f"on_exhausted must be one of {EXHAUSTED_POLICIES}, got {self.on_exhausted!r}")
        if self.sign_scaling not in SIGN_SCALINGS:
            raise ValueError(f"sign_scaling must be one of {SIGN_SCALINGS}, got {self.sign_scaling!r}")
        if self.rel_tol is not None and self.rel_tol < 0:
            raise ValueError(f"rel_tol must be >= 0, got {self.rel_tol}")
        if not self.shift_radius > 0:
            raise ValueError(f"shift_radius must be > 0, got {self.shift_radius}")
        if self.block_size < 1:
            raise ValueError(f"block_size must be >= 1, got {self.block_size}")

    def resolve_rel_tol(self, n: int, dtype: torch.dtype) -> float:
        if self.rel_tol is not None:
            return self.rel_tol
        return default_rel_tol(n, dtype)

    @property
    def sign_kwargs(self) -> dict:
        return dict(max_its=self.sign_max_its, tol=self.sign_tol, scaling=self.sign_scaling)


def gershgorin_center(A: torch.Tensor):
    n = A.shape[0]
    tr = torch.trace(A).item()
    return tr / n


def off_diagonal_inf_norm(A: torch.Tensor) -> float:
    """Infinity norm of A with its diagonal zeroed; A is restored on return."""
    d = A.diagonal().clone()
    A.diagonal().zero_()
    try:
        return float(torch.linalg.matrix_norm(A, ord=math.inf))
    finally:
        A.diagonal().copy_(d)


def spectral_divide_(A: torch.Tensor, Q: torch.Tensor | None = None, *,
                     config: SDCConfig | None = None,
                     rng: RandomContext | None = None,
                     grid: Grid | None = None) -> SplitOutcome:
    """
    Split the spectrum of A in place: A := U^H A U with U unitary and A[k:, :k]
    small, k = outcome.partition.index.

    If Q is given it receives U (explicit transform); otherwise U is applied
    implicitly and discarded.
    """
    config = config if config is not None else SDCConfig()
    grid = grid if grid is not None else (rng.grid if rng is not None else Grid())
    rng = rng if rng is not None else RandomContext(grid=grid)

    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise ValueError(f"A must be square, got shape {tuple(A.shape)}")
    n = A.shape[0]
    if n < 2:
        raise ValueError(f"spectral_divide_ needs n >= 2, got n={n}")
    if Q is not None and (Q.shape != A.shape or Q.dtype != A.dtype or Q.device != A.device):
        raise ValueError("Q must match A in shape, dtype and device")

    rel_tol = config.resolve_rel_tol(n, A.dtype)

    # Already split: take the admissible index closest to the middle.
    one_a = one_norm(A)
    part = balanced_partition(A, grid, tol=rel_tol * one_a).normalized(one_a)
    if part.value <= rel_tol:
        logger.debug("n=%d already split at %d (value %.3e)", n, part.index, part.value)
        if Q is not None:
            Q.copy_(torch.eye(n, dtype=Q.dtype, device=Q.device))
        return SplitOutcome(SplitStatus.CONVERGED, part, 0, [])

    complex_field = A.is_complex()
    center = gershgorin_center(A)
    radius = config.shift_radius * off_diagonal_inf_norm(A)
    shift = rng.sample_ball(-center, radius, complex_field=complex_field)
    gamma = rng.unit_phase() if complex_field else None
    logger.debug("n=%d center=%s radius=%.3e shift=%s gamma=%s", n, center, radius, shift, gamma)

    G = Q if Q is not None else torch.empty_like(A)
    G.copy_(A)
    G.diagonal().add_(shift)
    if gamma is not None:
        G.mul_(gamma)

    mode = TransformMode.EXPLICIT if Q is not None else TransformMode.IMPLICIT
    if config.randomized:
        return randomized_sign_divide_(
            A, G,
            mode=mode,
            max_its=config.max_its,
            rel_tol=rel_tol,
            rng=rng,
            block_size=config.block_size,
            grid=grid,
            sign_options=config.sign_kwargs,
        )

    part = sign_divide_(A, G, mode=mode, block_size=config.block_size, grid=grid,
                        sign_options=config.sign_kwargs)
    status = SplitStatus.CONVERGED if part.value <= rel_tol else SplitStatus.EXHAUSTED
    return SplitOutcome(status, part, 1, [part.value])
