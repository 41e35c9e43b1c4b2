"""
Householder kernels for the spectral divide step.

Reflectors follow the LAPACK convention used by torch.geqrf / torch.ormqr:
  H_i = I - tau_i v_i v_i^H,  v_i[0] = 1,  Q = H_1 H_2 ... H_k,
with v_i stored strictly below the diagonal of `factors`.

Application of Q (or Q^H) is blocked: panels of `block_size` reflectors are
turned into a compact WY form Q_p = I - V T V^H and applied with GEMMs, so Q
is never formed explicitly.
"""
from __future__ import annotations

import torch

from sdc_grid import RandomContext


def householder_vec(x: torch.Tensor):
    """
    Householder for real or complex vector x (1D), returns (v, tau, beta) such that
    (I - tau v v^H)^H x = [beta, 0, ..., 0]^T, with v[0]=1 and beta real.
    """
    assert x.ndim == 1
    dtype = x.dtype
    device = x.device

    alpha = x[0]
    if x.numel() == 1 and not x.is_complex():
        v = torch.ones_like(x)
        tau = torch.zeros((), dtype=dtype, device=device)
        return v, tau, alpha

    x_tail = x[1:]
    sigma = torch.linalg.vector_norm(x_tail) ** 2
    alpha_re = alpha.real
    alpha_im = alpha.imag if x.is_complex() else torch.zeros_like(alpha_re)

    # For sigma==0 and real alpha the reflector is identity: tau=0, beta=alpha, v=[1,0,...].
    is_zero = (sigma == 0) & (alpha_im == 0)

    norm = torch.sqrt(alpha_re * alpha_re + alpha_im * alpha_im + sigma)
    beta0 = torch.where(alpha_re <= 0, norm, -norm)
    beta = torch.where(is_zero, alpha_re, beta0)
    beta0_f = beta0.to(dtype)
    zero = torch.zeros((), dtype=dtype, device=device)
    tau = torch.where(is_zero, zero, (beta0_f - alpha) / beta0_f)
    scale = torch.where(is_zero, zero, 1.0 / (alpha - beta0_f))

    v = x.clone()
    v[0] = 1.0
    v[1:] = v[1:] * scale
    return v, tau, beta


def pivoted_qr(A: torch.Tensor):
    """
    Column-pivoted Householder QR (unblocked, geqp3-style): A[:, perm] = Q R.

    Returns (factors, tau, perm) with R in the upper triangle of `factors` and the
    reflectors below it, in the layout torch.geqrf produces.
    """
    assert A.ndim == 2
    F = A.clone()
    m, n = F.shape
    k = min(m, n)
    tau = torch.zeros((k,), device=A.device, dtype=A.dtype)
    perm = torch.arange(n, device=A.device)
    norms = torch.linalg.vector_norm(F, dim=0)

    for j in range(k):
        p = j + int(torch.argmax(norms[j:]))
        if p != j:
            F[:, [j, p]] = F[:, [p, j]]
            perm[[j, p]] = perm[[p, j]]
            norms[[j, p]] = norms[[p, j]]

        v, t, beta = householder_vec(F[j:, j])
        tau[j] = t

        # Trailing columns: C := H^H C = C - conj(tau) v (v^H C)
        if j + 1 < n:
            C = F[j:, j + 1:]
            y = v.conj() @ C
            C -= t.conj() * torch.outer(v, y)

        F[j, j] = beta
        F[j + 1:, j] = v[1:]
        if j + 1 < n:
            norms[j + 1:] = torch.linalg.vector_norm(F[j + 1:, j + 1:], dim=0)

    return F, tau, perm


def larft_forward_columnwise_gram(V: torch.Tensor, tau: torch.Tensor) -> torch.Tensor:
    """
    Build T (upper triangular) for the compact WY representation (forward, columnwise):
      Q = I - V T V^H
    using the Gram matrix G = V^H V once and the recurrence on the small (k,k) matrices.
    """
    assert V.ndim == 2 and tau.ndim == 1
    m, b = V.shape
    k = min(m, b)
    if k == 0:
        return torch.empty((0, 0), device=V.device, dtype=V.dtype)
    tau = tau[:k]
    G = V[:, :k].mH @ V[:, :k]  # (k,k)
    T = torch.zeros((k, k), device=V.device, dtype=V.dtype)
    T.diagonal().copy_(tau)
    for i in range(1, k):
        w = (-tau[i]) * G[:i, i]  # (i,)
        T[:i, i] = T[:i, :i] @ w
    return T


def panel_wy(factors: torch.Tensor, tau: torch.Tensor, i0: int, i1: int):
    """
    Compact WY form of reflectors i0:i1 stored in `factors`.
    Returns (V, T); V has rows i0: of the full space (implicit unit diagonal made explicit).
    """
    k = i1 - i0
    V = torch.tril(factors[i0:, i0:i1], diagonal=-1)
    V[:k, :k] = V[:k, :k] + torch.eye(k, device=factors.device, dtype=factors.dtype)
    T = larft_forward_columnwise_gram(V, tau[i0:i1])
    return V, T


def _panels(k: int, block_size: int):
    return [(i0, min(i0 + block_size, k)) for i0 in range(0, k, block_size)]


def apply_q_left_(factors: torch.Tensor, tau: torch.Tensor, C: torch.Tensor, *,
                  adjoint: bool = False, block_size: int = 32) -> torch.Tensor:
    """C := Q^H C (adjoint=True) or C := Q C, in place."""
    assert block_size >= 1
    k = tau.numel()
    panels = _panels(k, block_size)
    # Q^H = Q_r^H ... Q_1^H acts panel 1 first; Q acts panel r first.
    if not adjoint:
        panels = panels[::-1]
    for i0, i1 in panels:
        V, T = panel_wy(factors, tau, i0, i1)
        Tp = T.mH if adjoint else T
        Ci = C[i0:, :]
        Ci -= V @ (Tp @ (V.mH @ Ci))
    return C


def apply_q_right_(factors: torch.Tensor, tau: torch.Tensor, C: torch.Tensor, *,
                   adjoint: bool = False, block_size: int = 32) -> torch.Tensor:
    """C := C Q (adjoint=False) or C := C Q^H, in place."""
    assert block_size >= 1
    k = tau.numel()
    panels = _panels(k, block_size)
    if adjoint:
        panels = panels[::-1]
    for i0, i1 in panels:
        V, T = panel_wy(factors, tau, i0, i1)
        Tp = T.mH if adjoint else T
        Ci = C[:, i0:]
        Ci -= ((Ci @ V) @ Tp) @ V.mH
    return C


def implicit_haar(n: int, *, rng: RandomContext, dtype: torch.dtype, device=None):
    """
    Implicit Haar-distributed orthogonal/unitary matrix U = Q diag(phase), where
    Q R is the Householder QR of a Gaussian matrix and phase = sgn(diag(R)).
    Returns (factors, tau, phase).
    """
    X = rng.gaussian((n, n), dtype=dtype, device=device)
    factors, tau = torch.geqrf(X)
    d = factors.diagonal()
    mag = d.abs()
    safe = torch.where(mag == 0, torch.ones_like(mag), mag)
    phase = torch.where(mag == 0, torch.ones_like(d), d / safe)
    return factors, tau, phase


def apply_haar_right_(C: torch.Tensor, haar, *, block_size: int = 32) -> torch.Tensor:
    """C := C U for U from implicit_haar()."""
    factors, tau, phase = haar
    apply_q_right_(factors, tau, C, block_size=block_size)
    C *= phase[None, :]
    return C
