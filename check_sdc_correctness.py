#!/usr/bin/env python3
"""
Correctness check for SDC: Schur residual, unitarity of Q, and eigenvalues of T
vs torch.linalg.eigvals(A).
"""
from __future__ import annotations

import argparse

import torch

from sdc_run import DTYPES, random_matrix, schur_residuals
from sdc_schur import schur_sdc


def match_eigvals(w_ref: torch.Tensor, w: torch.Tensor) -> float:
    """Max distance from each reference eigenvalue to its greedy nearest unused match in w."""
    w = w.clone().cpu()
    used = torch.zeros(w.numel(), dtype=torch.bool)
    worst = 0.0
    for lam in w_ref.cpu():
        d = (w - lam).abs()
        d[used] = float("inf")
        j = int(torch.argmin(d))
        used[j] = True
        worst = max(worst, float(d[j]))
    return worst


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--n", type=int, default=256)
    ap.add_argument("--cutoff", type=int, default=32)
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--dtype", choices=sorted(DTYPES), default="float64")
    ap.add_argument("--device", default="cuda" if torch.cuda.is_available() else "cpu")
    args = ap.parse_args()

    A = random_matrix(args.n, args.seed, DTYPES[args.dtype], args.device)
    res = schur_sdc(A, cutoff=args.cutoff, seed=args.seed)

    rec, orth = schur_residuals(A, res.T, res.Q)
    w_A = torch.linalg.eigvals(A)
    max_abs = match_eigvals(w_A, res.eigenvalues)
    denom = w_A.abs().max().item() if args.n else 0.0
    rel = max_abs / (denom if denom != 0.0 else 1.0)
    print(f"schur residual: ||Q^H A Q - T||/||A||={rec:.3e} ||Q^H Q - I||={orth:.3e}")
    print(f"eigval compare (A vs sdc_T): max_abs={max_abs:.3e} rel={rel:.3e} splits={len(res.splits)}")


if __name__ == "__main__":
    main()
