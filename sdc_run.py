#!/usr/bin/env python3
"""
Single SDC Schur run on a random dense matrix.

Usage:
  python3 sdc_run.py --n 1024 --cutoff 128 --check
  torchrun --nproc_per_node 2 sdc_run.py --n 512 --cutoff 64 --dist
"""
from __future__ import annotations

import argparse
import logging
import time

import torch

from sdc_divide import SDCConfig
from sdc_grid import Grid, init_grid_from_env
from sdc_schur import schur_sdc


DTYPES = {
    "float32": torch.float32,
    "float64": torch.float64,
    "complex64": torch.complex64,
    "complex128": torch.complex128,
}


def random_matrix(n: int, seed: int, dtype: torch.dtype, device="cpu") -> torch.Tensor:
    """Gaussian test matrix, identical on every process for a given seed."""
    g = torch.Generator(device="cpu")
    g.manual_seed(seed)
    A = torch.randn((n, n), generator=g, dtype=dtype)
    return A.to(device)


def schur_residuals(A: torch.Tensor, T: torch.Tensor, Q: torch.Tensor) -> tuple[float, float]:
    """(||Q^H A Q - T||_F / ||A||_F, ||Q^H Q - I||_F)"""
    n = A.shape[0]
    if n == 0:
        return 0.0, 0.0
    nrm = torch.linalg.matrix_norm(A).item()
    rec = torch.linalg.matrix_norm(Q.mH @ A @ Q - T).item() / (nrm if nrm != 0.0 else 1.0)
    I = torch.eye(n, dtype=Q.dtype, device=Q.device)
    orth = torch.linalg.matrix_norm(Q.mH @ Q - I).item()
    return rec, orth


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--n", type=int, default=1024)
    ap.add_argument("--cutoff", type=int, default=256)
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--dtype", choices=sorted(DTYPES), default="float64")
    ap.add_argument("--device", default="cuda" if torch.cuda.is_available() else "cpu")
    ap.add_argument("--max-its", type=int, default=10, help="randomized split attempts per level")
    ap.add_argument("--on-exhausted", choices=["fallback", "warn", "ignore", "raise"], default="fallback")
    ap.add_argument("--no-vectors", action="store_true")
    ap.add_argument("--no-atr", action="store_true", help="skip rotating the coupling block")
    ap.add_argument("--check", action="store_true")
    ap.add_argument("--dist", action="store_true", help="run over torch.distributed (launch with torchrun)")
    ap.add_argument("--verbose", "-v", action="count", default=0)
    args = ap.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG if args.verbose > 1 else logging.INFO,
                            format="%(asctime)s %(name)s %(levelname)s %(message)s")

    grid = init_grid_from_env() if args.dist else Grid()
    config = SDCConfig(max_its=args.max_its, on_exhausted=args.on_exhausted)
    A = random_matrix(args.n, args.seed, DTYPES[args.dtype], args.device)

    if A.is_cuda:
        torch.cuda.synchronize()
    t0 = time.time()
    res = schur_sdc(A, cutoff=args.cutoff, want_vectors=not args.no_vectors, form_atr=not args.no_atr,
                    config=config, seed=args.seed, grid=grid)
    if A.is_cuda:
        torch.cuda.synchronize()
    ms = (time.time() - t0) * 1e3

    if not grid.is_root:
        return
    attempts = sum(o.attempts for _, _, o in res.splits)
    exhausted = sum(1 for _, _, o in res.splits if not o.converged)
    print(f"sdc n={args.n} cutoff={args.cutoff} dtype={args.dtype} procs={grid.size} total_ms={ms:.3f}")
    print(f"splits={len(res.splits)} attempts={attempts} exhausted={exhausted}")
    if args.check and res.Q is not None:
        rec, orth = schur_residuals(A, res.T, res.Q)
        print(f"residual ||Q^H A Q - T||/||A||={rec:.3e} ||Q^H Q - I||={orth:.3e}")


if __name__ == "__main__":
    main()
