#!/usr/bin/env python3
"""
Benchmark SDC against scipy.linalg.schur over a fixed set of sizes.
"""
from __future__ import annotations

import argparse
import time

import scipy.linalg
import torch

from sdc_run import DTYPES, random_matrix
from sdc_schur import schur_sdc


SIZES = [256, 512, 1024, 2048, 4096]


def run_once(A: torch.Tensor, cutoff: int, seed: int) -> float:
    if A.is_cuda:
        torch.cuda.synchronize()
    t0 = time.time()
    _ = schur_sdc(A, cutoff=cutoff, seed=seed)
    if A.is_cuda:
        torch.cuda.synchronize()
    return (time.time() - t0) * 1e3


def run_scipy(A: torch.Tensor) -> float:
    a = A.cpu().numpy()
    t0 = time.time()
    _ = scipy.linalg.schur(a, output="complex" if A.is_complex() else "real")
    return (time.time() - t0) * 1e3


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--cutoff", type=int, default=256)
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--dtype", choices=sorted(DTYPES), default="float64")
    ap.add_argument("--device", default="cuda" if torch.cuda.is_available() else "cpu")
    ap.add_argument("--sizes", type=int, nargs="*", default=SIZES)
    args = ap.parse_args()

    print("n,cutoff,sdc_ms,scipy_ms,speedup")
    for n in args.sizes:
        A = random_matrix(n, args.seed, DTYPES[args.dtype], args.device)
        # warm once
        _ = run_once(A, args.cutoff, args.seed)
        if A.is_cuda:
            torch.cuda.empty_cache()
        sdc_ms = run_once(A, args.cutoff, args.seed + 1)
        ref_ms = run_scipy(A)
        print(f"{n},{args.cutoff},{sdc_ms:.3f},{ref_ms:.3f},{ref_ms / sdc_ms:.3f}")


if __name__ == "__main__":
    main()
