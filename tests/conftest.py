import pytest
import torch


def split_matrix(eigs, *, seed=0, dtype=torch.float64, coupling=0.5):
    """V (diag(eigs) + strictly upper noise) V^H with V Haar-random unitary."""
    n = len(eigs)
    g = torch.Generator().manual_seed(seed)
    if dtype.is_complex:
        real = torch.float64 if dtype == torch.complex128 else torch.float32
        X = torch.complex(torch.randn((n, n), generator=g, dtype=real), torch.randn((n, n), generator=g, dtype=real))
        N = torch.complex(torch.randn((n, n), generator=g, dtype=real), torch.randn((n, n), generator=g, dtype=real))
    else:
        X = torch.randn((n, n), generator=g, dtype=dtype)
        N = torch.randn((n, n), generator=g, dtype=dtype)
    V, _ = torch.linalg.qr(X)
    D = torch.diag(torch.tensor(eigs, dtype=dtype)) + coupling * torch.triu(N, diagonal=1)
    return V @ D @ V.mH


@pytest.fixture
def separated_real():
    return split_matrix([1.0, 2.0, 3.0, 10.0, 11.0, 12.0], seed=1)


@pytest.fixture
def separated_complex():
    return split_matrix([3, -3, 3j, -3j, 2 + 2j, -2 - 2j], seed=2, dtype=torch.complex128)
