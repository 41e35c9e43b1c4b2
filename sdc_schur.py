"""
Spectral Divide-and-Conquer (SDC) Schur decomposition A = Q T Q^H.

The spectrum is split recursively with the matrix sign function until blocks
are at most `cutoff` wide; those are handed to a conventional dense Schur
solver (scipy.linalg.schur, i.e. LAPACK ?gees). The Schur vectors of each
child are folded back into the parent's Q, and the coupling block A_TR is
rotated into the children's bases when `form_atr` is set.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import scipy.linalg
import torch

from sdc_divide import SDCConfig, spectral_divide_
from sdc_grid import Grid, RandomContext
from sdc_sign import SplitOutcome


logger = logging.getLogger(__name__)

_COMPLEX_DTYPE = {
    torch.float32: torch.complex64,
    torch.float64: torch.complex128,
    torch.complex64: torch.complex64,
    torch.complex128: torch.complex128,
}


class SplitNotConvergedError(RuntimeError):
    def __init__(self, outcome: SplitOutcome, n: int):
        self.outcome = outcome
        self.n = n
        super().__init__(
            f"spectral split of n={n} did not converge after {outcome.attempts} attempts "
            f"(best value {outcome.partition.value:.3e})"
        )


def complex_dtype(dtype: torch.dtype) -> torch.dtype:
    return _COMPLEX_DTYPE[dtype]


def quasi_triangular_eigvals(T: torch.Tensor) -> torch.Tensor:
    """Eigenvalues of a (quasi) upper triangular T, read from its 1x1 and 2x2 diagonal blocks."""
    n = T.shape[0]
    w = torch.empty((n,), dtype=complex_dtype(T.dtype), device=T.device)
    i = 0
    while i < n:
        if not T.is_complex() and i + 1 < n and T[i + 1, i] != 0:
            w[i:i + 2] = torch.linalg.eigvals(T[i:i + 2, i:i + 2])
            i += 2
        else:
            w[i] = T[i, i]
            i += 1
    return w


def dense_schur_(A: torch.Tensor, Z: torch.Tensor | None = None, w: torch.Tensor | None = None):
    """
    In-place dense Schur decomposition: A := T, Z := Schur vectors, w := eigenvalues.
    Real input gives the real (quasi-triangular) form.
    """
    n = A.shape[0]
    if n == 0:
        return A
    if n == 1:
        if Z is not None:
            Z.fill_(1)
        if w is not None:
            w[0] = A[0, 0]
        return A

    a = A.detach().cpu().numpy()
    T, Zn = scipy.linalg.schur(a, output="complex" if A.is_complex() else "real")
    A.copy_(torch.from_numpy(np.ascontiguousarray(T)).to(dtype=A.dtype, device=A.device))
    if Z is not None:
        Z.copy_(torch.from_numpy(np.ascontiguousarray(Zn)).to(dtype=Z.dtype, device=Z.device))
    if w is not None:
        w.copy_(quasi_triangular_eigvals(A))
    return A


def _base_case_(A, Q, w, grid: Grid):
    outputs = [t for t in (A, Q, w) if t is not None]
    grid.solve_on_root_(lambda: dense_schur_(A, Q, w), *outputs)


def _check_inputs(A, Q, w, cutoff):
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise ValueError(f"A must be a square matrix, got shape {tuple(A.shape)}")
    if A.dtype not in _COMPLEX_DTYPE:
        raise ValueError(f"unsupported dtype {A.dtype}")
    if Q is not None and (Q.shape != A.shape or Q.dtype != A.dtype or Q.device != A.device):
        raise ValueError("Q must match A in shape, dtype and device")
    if w is not None and (w.shape != (A.shape[0],) or not w.is_complex()):
        raise ValueError(f"w must be a complex vector of length {A.shape[0]}")
    if cutoff < 1:
        raise ValueError(f"cutoff must be >= 1, got {cutoff}")


def _sdc_rec(A, Q, w, form_atr, cutoff, config, rng, grid, splits, depth):
    n = A.shape[0]
    if n == 0:
        return
    if n <= cutoff:
        _base_case_(A, Q, w, grid)
        return

    outcome = spectral_divide_(A, Q, config=config, rng=rng, grid=grid)
    splits.append((depth, n, outcome))

    if not outcome.converged:
        policy = config.on_exhausted
        if policy == "raise":
            raise SplitNotConvergedError(outcome, n)
        if policy == "fallback":
            logger.warning("split of n=%d not converged after %d attempts (value %.3e); dense fallback",
                           n, outcome.attempts, outcome.partition.value)
            Z = torch.empty_like(A) if Q is not None else None
            _base_case_(A, Z, w, grid)
            if Q is not None:
                Q.copy_(Q @ Z)
            return
        if policy == "warn":
            logger.warning("split of n=%d not converged after %d attempts (value %.3e); accepting",
                           n, outcome.attempts, outcome.partition.value)

    k = outcome.partition.index
    logger.debug("depth %d: n=%d -> %d + %d (attempts=%d)", depth, n, k, n - k, outcome.attempts)

    ATL, ATR = A[:k, :k], A[:k, k:]
    ABR = A[k:, k:]
    wT = w[:k] if w is not None else None
    wB = w[k:] if w is not None else None
    ZT = torch.empty_like(ATL) if Q is not None else None
    ZB = torch.empty_like(ABR) if Q is not None else None

    rng_t, rng_b = rng.spawn(), rng.spawn()
    _sdc_rec(ATL, ZT, wT, form_atr, cutoff, config, rng_t, grid, splits, depth + 1)
    _sdc_rec(ABR, ZB, wB, form_atr, cutoff, config, rng_b, grid, splits, depth + 1)

    if Q is None:
        return
    QL, QR = Q[:, :k], Q[:, k:]
    QL.copy_(QL @ ZT)
    QR.copy_(QR @ ZB)
    if form_atr:
        ATR.copy_(ZT.mH @ ATR @ ZB)


def sdc_(A: torch.Tensor, Q: torch.Tensor | None = None, w: torch.Tensor | None = None, *,
         form_atr: bool = True,
         cutoff: int = 256,
         config: SDCConfig | None = None,
         rng: RandomContext | None = None,
         grid: Grid | None = None,
         splits: list | None = None) -> torch.Tensor:
    """
    In-place SDC Schur decomposition.

    On return A holds T (its strictly lower part is only small, not zeroed),
    Q (if given) the Schur vectors with A_in = Q T Q^H, and w (if given) the
    eigenvalues. Without Q the off-diagonal block is never rotated, so only
    the diagonal blocks and w are meaningful. `splits` collects
    (depth, n, SplitOutcome) for every split performed.
    """
    _check_inputs(A, Q, w, cutoff)
    config = config if config is not None else SDCConfig()
    grid = grid if grid is not None else (rng.grid if rng is not None else Grid())
    rng = rng if rng is not None else RandomContext(grid=grid)
    splits = splits if splits is not None else []
    _sdc_rec(A, Q, w, form_atr, cutoff, config, rng, grid, splits, 0)
    return A


@dataclass
class SchurResult:
    T: torch.Tensor
    Q: torch.Tensor | None
    eigenvalues: torch.Tensor
    splits: list = field(default_factory=list)


def schur_sdc(A: torch.Tensor, *, cutoff: int = 256, want_vectors: bool = True, form_atr: bool = True,
              config: SDCConfig | None = None, seed: int | None = None,
              grid: Grid | None = None) -> SchurResult:
    """Non-mutating wrapper around sdc_."""
    _check_inputs(A, None, None, cutoff)
    grid = grid if grid is not None else Grid()
    n = A.shape[0]
    T = A.clone()
    Q = torch.empty_like(A) if want_vectors else None
    w = torch.empty((n,), dtype=complex_dtype(A.dtype), device=A.device)
    splits = []
    sdc_(T, Q, w, form_atr=form_atr, cutoff=cutoff, config=config,
         rng=RandomContext(seed, grid=grid), grid=grid, splits=splits)
    return SchurResult(T, Q, w, splits)
