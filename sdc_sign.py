"""
Matrix sign function and the sign-function spectral divide.

Given a generator G (a shifted/rotated copy of A), P = (sign(G) + I) / 2 is
the spectral projector onto the eigenvalues of G with positive real part. A
rank-revealing QR of P yields a unitary Q whose leading columns span that
invariant subspace, so Q^H A Q is block upper triangular up to roundoff.

See Z. Bai, J. Demmel, J. Dongarra, A. Petitet, H. Robinson and K. Stanley,
"The spectral decomposition of nonsymmetric matrices on distributed memory
parallel computers" (LAWN 91), and J. Demmel, I. Dumitriu and O. Holtz,
"Fast linear algebra is stable" (LAWN 186) for the randomized URV variant.
"""
from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field

import torch

from sdc_grid import Grid, RandomContext
from sdc_householder import apply_haar_right_, apply_q_left_, apply_q_right_, implicit_haar, pivoted_qr
from sdc_partition import PartitionResult, compute_partition, machine_eps, one_norm


logger = logging.getLogger(__name__)

SIGN_SCALINGS = ("frobenius", "determinant", "none")


def _newton_scale(X: torch.Tensor, X_inv: torch.Tensor, scaling: str) -> float:
    n = X.shape[0]
    if scaling == "frobenius":
        return math.sqrt(float(torch.linalg.matrix_norm(X_inv)) / float(torch.linalg.matrix_norm(X)))
    if scaling == "determinant":
        _, logabsdet = torch.linalg.slogdet(X)
        return math.exp(-float(logabsdet) / n)
    return 1.0


def sign_(X: torch.Tensor, *, max_its: int = 100, tol: float | None = None,
          scaling: str = "frobenius") -> int:
    """
    In-place matrix sign function via the scaled Newton iteration
      X := (mu X + (mu X)^{-1}) / 2.

    Scaling is dropped once the relative step is below 1e-2. The iteration stops
    when the relative 1-norm step is <= tol (default n*eps), or one step after it
    drops below sqrt(tol). Returns the number of iterations taken.
    """
    if scaling not in SIGN_SCALINGS:
        raise ValueError(f"unknown scaling={scaling}")
    assert X.ndim == 2 and X.shape[0] == X.shape[1]
    n = X.shape[0]
    if n == 0:
        return 0
    if tol is None:
        tol = n * machine_eps(X.dtype)

    scale = scaling != "none"
    final = False
    for it in range(1, max_its + 1):
        X_inv = torch.linalg.inv(X)
        mu = _newton_scale(X, X_inv, scaling) if scale else 1.0
        X_new = 0.5 * (mu * X + X_inv / mu)

        step = float(torch.linalg.matrix_norm(X_new - X, ord=1))
        size = float(torch.linalg.matrix_norm(X_new, ord=1))
        X.copy_(X_new)
        if final or step <= tol * size:
            return it
        if step <= 1e-2 * size:
            scale = False
        if step <= math.sqrt(tol) * size:
            final = True

    logger.warning("sign iteration did not converge in %d iterations (n=%d)", max_its, n)
    return max_its


def spectral_projector_(G: torch.Tensor, **sign_kwargs) -> torch.Tensor:
    """G := (sign(G) + I) / 2."""
    sign_(G, **sign_kwargs)
    G.diagonal().add_(1.0)
    G.mul_(0.5)
    return G


# ----------------------------
# Similarity strategies
# ----------------------------

class TransformMode(enum.Enum):
    IMPLICIT = "implicit"
    EXPLICIT = "explicit"


class ImplicitSimilarity:
    """A := Q^H A Q by applying the Householder representation from both sides; Q is never formed."""

    mode = TransformMode.IMPLICIT

    def __init__(self, block_size: int = 32):
        self.block_size = block_size

    def transform_(self, A: torch.Tensor, factors: torch.Tensor, tau: torch.Tensor):
        apply_q_left_(factors, tau, A, adjoint=True, block_size=self.block_size)
        apply_q_right_(factors, tau, A, block_size=self.block_size)
        return None


class ExplicitSimilarity:
    """A := Q^H A Q with Q formed explicitly and two GEMMs; returns Q."""

    mode = TransformMode.EXPLICIT

    def __init__(self, block_size: int = 32):
        self.block_size = block_size

    def transform_(self, A: torch.Tensor, factors: torch.Tensor, tau: torch.Tensor):
        Q = torch.linalg.householder_product(factors, tau)
        B = Q.mH @ A
        A.copy_(B @ Q)
        return Q


def similarity_strategy(mode: TransformMode, *, block_size: int = 32):
    if mode is TransformMode.IMPLICIT:
        return ImplicitSimilarity(block_size)
    if mode is TransformMode.EXPLICIT:
        return ExplicitSimilarity(block_size)
    raise ValueError(f"unknown mode={mode}")


# ----------------------------
# Sign divide
# ----------------------------

class SplitStatus(enum.Enum):
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"


@dataclass
class SplitOutcome:
    status: SplitStatus
    partition: PartitionResult
    attempts: int
    history: list = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status is SplitStatus.CONVERGED


def _check_pair(A: torch.Tensor, G: torch.Tensor):
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise ValueError(f"A must be square, got shape {tuple(A.shape)}")
    if G.shape != A.shape or G.dtype != A.dtype:
        raise ValueError(f"G must match A ({tuple(A.shape)}, {A.dtype}), got ({tuple(G.shape)}, {G.dtype})")


def default_rel_tol(n: int, dtype: torch.dtype) -> float:
    return 50 * n * machine_eps(dtype)


def sign_divide_(A: torch.Tensor, G: torch.Tensor, *,
                 mode: TransformMode = TransformMode.IMPLICIT,
                 block_size: int = 32,
                 grid: Grid | None = None,
                 sign_options: dict | None = None) -> PartitionResult:
    """
    One (pivoted) sign-function split: A := Q^H A Q where G P = Q R is the
    column-pivoted QR of the projector built from G.

    G is consumed; in EXPLICIT mode it holds Q on exit. `sign_options` are passed
    to sign_ (max_its, tol, scaling). The returned value is
    ||A21||_1 (entrywise) / ||A||_1 of the untransformed A.
    """
    _check_pair(A, G)
    one_a = one_norm(A)

    spectral_projector_(G, **(sign_options or {}))
    factors, tau, _ = pivoted_qr(G)

    Q = similarity_strategy(mode, block_size=block_size).transform_(A, factors, tau)
    if Q is not None:
        G.copy_(Q)

    return compute_partition(A, grid).normalized(one_a)


def randomized_sign_divide_(A: torch.Tensor, G: torch.Tensor, *,
                            mode: TransformMode = TransformMode.IMPLICIT,
                            max_its: int = 10,
                            rel_tol: float | None = None,
                            rng: RandomContext | None = None,
                            block_size: int = 32,
                            grid: Grid | None = None,
                            sign_options: dict | None = None) -> SplitOutcome:
    """
    Randomized URV variant of sign_divide_: the projector S is right-multiplied
    by an implicit Haar matrix before an unpivoted QR.

    Up to `max_its` attempts; each failed attempt restores A from a saved copy.
    Returns CONVERGED on the first attempt with value <= rel_tol (default
    50*n*eps), otherwise EXHAUSTED with the last attempt's transform kept in A.
    """
    _check_pair(A, G)
    if max_its < 1:
        raise ValueError(f"max_its must be >= 1, got {max_its}")
    if rel_tol is not None and rel_tol < 0:
        raise ValueError(f"rel_tol must be >= 0, got {rel_tol}")
    grid = grid if grid is not None else (rng.grid if rng is not None else Grid())
    rng = rng if rng is not None else RandomContext(grid=grid)
    n = A.shape[0]
    one_a = one_norm(A)
    if rel_tol is None:
        rel_tol = default_rel_tol(n, A.dtype)

    S = G.clone()
    spectral_projector_(S, **(sign_options or {}))

    strategy = similarity_strategy(mode, block_size=block_size)
    saved = A.clone()
    history = []
    part = None
    for it in range(max_its):
        G.copy_(S)

        # RURV of the spectral projector
        haar = implicit_haar(n, rng=rng, dtype=A.dtype, device=A.device)
        apply_haar_right_(G, haar, block_size=block_size)
        factors, tau = torch.geqrf(G)

        Q = strategy.transform_(A, factors, tau)
        if Q is not None:
            G.copy_(Q)

        part = compute_partition(A, grid).normalized(one_a)
        history.append(part.value)
        logger.debug("randomized sign divide n=%d attempt %d/%d: index=%d value=%.3e (tol %.3e)",
                     n, it + 1, max_its, part.index, part.value, rel_tol)

        if part.value <= rel_tol:
            return SplitOutcome(SplitStatus.CONVERGED, part, it + 1, history)
        if it == max_its - 1:
            break
        A.copy_(saved)

    return SplitOutcome(SplitStatus.EXHAUSTED, part, max_its, history)
