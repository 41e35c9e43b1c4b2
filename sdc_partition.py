"""
Partition selection for a matrix that has just been spectrally split.

For a split at index k the bottom-left block is A[k:, :k]. Its entrywise
1-norm, for every k, comes out of one O(n^2) pass over the strictly lower
triangle (column and row magnitude sums) followed by a running scan.
"""
from __future__ import annotations

import math
from dataclasses import dataclass

import torch
import triton
import triton.language as tl

from sdc_grid import Grid


@dataclass(frozen=True)
class PartitionResult:
    index: int
    value: float

    @property
    def is_sentinel(self) -> bool:
        return self.index < 0

    def normalized(self, scale: float) -> "PartitionResult":
        if self.is_sentinel or scale == 0:
            return self
        return PartitionResult(self.index, self.value / scale)


NO_PARTITION = PartitionResult(-1, -1.0)


def machine_eps(dtype: torch.dtype) -> float:
    real = {torch.complex64: torch.float32, torch.complex128: torch.float64}.get(dtype, dtype)
    return torch.finfo(real).eps


def one_norm(A: torch.Tensor) -> float:
    if A.numel() == 0:
        return 0.0
    return float(torch.linalg.matrix_norm(A, ord=1))


@triton.jit
def lower_abs_sums_kernel(A_ptr, col_ptr, row_ptr,
                          N,
                          stride_am, stride_an,
                          col_rank, col_stride,
                          BM: tl.constexpr, BN: tl.constexpr):
    """
    col[j]   += sum_{i>j} |A[i,j]|  (j < N-1)
    row[i-1] += sum_{j<i} |A[i,j]|  (i >= 1)
    restricted to columns j with j % col_stride == col_rank.
    """
    pid_m = tl.program_id(0)
    pid_n = tl.program_id(1)

    # Skip tiles with no strictly-lower entries.
    m0 = pid_m * BM
    n0 = pid_n * BN
    if (m0 + (BM - 1)) <= n0:
        return

    offs_m = m0 + tl.arange(0, BM)
    offs_n = n0 + tl.arange(0, BN)
    mask_m = offs_m < N
    mask_n = (offs_n < (N - 1)) & ((offs_n % col_stride) == col_rank)
    lower = offs_m[:, None] > offs_n[None, :]
    mask = mask_m[:, None] & mask_n[None, :] & lower

    a = tl.load(A_ptr + offs_m[:, None] * stride_am + offs_n[None, :] * stride_an, mask=mask, other=0.0)
    a = tl.abs(a.to(tl.float64))
    tl.atomic_add(col_ptr + offs_n, tl.sum(a, axis=0), mask=mask_n)
    tl.atomic_add(row_ptr + offs_m - 1, tl.sum(a, axis=1), mask=mask_m & (offs_m >= 1))


def _use_triton(A: torch.Tensor) -> bool:
    return A.is_cuda and A.dtype in (torch.float32, torch.float64)


def lower_abs_sums(A: torch.Tensor, grid: Grid | None = None, *, bm: int = 64, bn: int = 64):
    """
    Local (this process's columns) strictly-lower column and row magnitude sums, float64,
    each of length n-1. Summing them over the grid gives the full sums.
    """
    grid = grid if grid is not None else Grid()
    n = A.shape[0]
    assert A.ndim == 2 and n == A.shape[1] and n >= 2

    if _use_triton(A):
        col_sums = torch.zeros((n - 1,), device=A.device, dtype=torch.float64)
        row_sums = torch.zeros((n - 1,), device=A.device, dtype=torch.float64)
        launch = (triton.cdiv(n, bm), triton.cdiv(n, bn))
        lower_abs_sums_kernel[launch](
            A, col_sums, row_sums,
            N=n,
            stride_am=A.stride(0), stride_an=A.stride(1),
            col_rank=grid.rank, col_stride=grid.size,
            BM=bm, BN=bn,
            num_warps=4,
        )
        return col_sums, row_sums

    L = torch.tril(A.abs(), diagonal=-1).to(torch.float64)
    if grid.distributed:
        owned = torch.zeros((n,), dtype=torch.bool, device=A.device)
        owned[grid.owned_columns(n).to(A.device)] = True
        L = L * owned[None, :]
    col_sums = L.sum(dim=0)[: n - 1]
    row_sums = L.sum(dim=1)[1:]
    return col_sums, row_sums


def partition_norms(A: torch.Tensor, grid: Grid | None = None) -> torch.Tensor:
    """norms[k-1] = entrywise 1-norm of A[k:, :k] for k in [1, n-1], float64 on the host."""
    grid = grid if grid is not None else Grid()
    col_sums, row_sums = lower_abs_sums(A, grid)
    grid.all_reduce_(col_sums)
    grid.all_reduce_(row_sums)

    # norms[0] = col[0];  norms[j] = norms[j-1] + col[j] - row[j-1]
    steps = col_sums.cpu().clone()
    steps[1:] -= row_sums.cpu()[:-1]
    return torch.cumsum(steps, dim=0).clamp_(min=0.0)


def compute_partition(A: torch.Tensor, grid: Grid | None = None) -> PartitionResult:
    """
    Index k in [1, n-1] minimizing the entrywise 1-norm of A[k:, :k], and that norm.
    Returns NO_PARTITION for n <= 1.
    """
    if A.shape[0] <= 1:
        return NO_PARTITION
    norms = partition_norms(A, grid)
    j = int(torch.argmin(norms))
    return PartitionResult(j + 1, float(norms[j]))


def balanced_partition(A: torch.Tensor, grid: Grid | None = None, *, tol: float = 0.0) -> PartitionResult:
    """
    Among the indices whose norm is <= tol, the one closest to n/2 (smaller index on
    ties). Falls back to compute_partition when no index qualifies.
    """
    n = A.shape[0]
    if n <= 1:
        return NO_PARTITION
    norms = partition_norms(A, grid)
    ks = torch.arange(1, n, dtype=torch.float64)
    gap = torch.where(norms <= tol, (ks - n / 2).abs(), torch.full_like(ks, math.inf))
    j = int(torch.argmin(gap))
    if math.isinf(float(gap[j])):
        j = int(torch.argmin(norms))
    return PartitionResult(j + 1, float(norms[j]))
