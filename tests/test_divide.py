"""Tests for the spectral splitter and its configuration."""
import pytest
import torch


class TestSDCConfig:

    def test_defaults(self):
        from sdc_divide import SDCConfig
        cfg = SDCConfig()
        assert cfg.max_its == 10
        assert cfg.rel_tol is None
        assert cfg.randomized is True
        assert cfg.on_exhausted == "fallback"
        assert cfg.sign_kwargs == {"max_its": 100, "tol": None, "scaling": "frobenius"}

    @pytest.mark.parametrize("kwargs", [
        {"max_its": 0},
        {"sign_max_its": 0},
        {"on_exhausted": "retry"},
        {"sign_scaling": "spectral"},
        {"rel_tol": -1.0},
        {"shift_radius": 0.0},
        {"block_size": 0},
    ])
    def test_invalid(self, kwargs):
        from sdc_divide import SDCConfig
        with pytest.raises(ValueError):
            SDCConfig(**kwargs)

    def test_resolve_rel_tol(self):
        from sdc_divide import SDCConfig
        eps = torch.finfo(torch.float64).eps
        assert SDCConfig().resolve_rel_tol(10, torch.float64) == pytest.approx(500 * eps)
        assert SDCConfig(rel_tol=1e-3).resolve_rel_tol(10, torch.float64) == 1e-3


class TestHelpers:

    def test_gershgorin_center(self):
        from sdc_divide import gershgorin_center
        A = torch.diag(torch.tensor([1.0, 2.0, 6.0], dtype=torch.float64))
        assert gershgorin_center(A) == pytest.approx(3.0)

    def test_off_diagonal_norm_restores(self):
        from sdc_divide import off_diagonal_inf_norm
        A = torch.tensor([[5.0, -1.0], [2.0, 7.0]], dtype=torch.float64)
        before = A.clone()
        assert off_diagonal_inf_norm(A) == 2.0
        assert torch.equal(A, before)


class TestSpectralDivide:

    def test_real_split(self, separated_real):
        from sdc_divide import spectral_divide_
        from sdc_grid import RandomContext
        A = separated_real.clone()
        Q = torch.empty_like(A)
        out = spectral_divide_(A, Q, rng=RandomContext(0))
        assert out.converged
        assert out.partition.index == 3
        assert torch.allclose(Q.mH @ Q, torch.eye(6, dtype=Q.dtype), atol=1e-12)
        assert torch.allclose(Q.mH @ separated_real @ Q, A, atol=1e-10)
        top = torch.linalg.eigvals(A[:3, :3]).real.sort().values
        bottom = torch.linalg.eigvals(A[3:, 3:]).real.sort().values
        # The positive side of sign(A - center) comes first.
        assert torch.allclose(top, torch.tensor([10.0, 11.0, 12.0], dtype=torch.float64), atol=1e-9)
        assert torch.allclose(bottom, torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64), atol=1e-9)

    def test_implicit_split(self, separated_real):
        from sdc_divide import spectral_divide_
        from sdc_grid import RandomContext
        A = separated_real.clone()
        out = spectral_divide_(A, rng=RandomContext(1))
        assert out.converged
        assert out.partition.index == 3
        one = float(torch.linalg.matrix_norm(separated_real, ord=1))
        assert float(A[3:, :3].abs().sum()) < 1e-12 * one

    def test_complex_split(self, separated_complex):
        from sdc_divide import spectral_divide_
        from sdc_grid import RandomContext
        A = separated_complex.clone()
        Q = torch.empty_like(A)
        out = spectral_divide_(A, Q, rng=RandomContext(2))
        assert out.converged
        assert torch.allclose(Q.mH @ separated_complex @ Q, A, atol=1e-10)

    def test_pivoted_path(self, separated_real):
        from sdc_divide import SDCConfig, spectral_divide_
        from sdc_grid import RandomContext
        A = separated_real.clone()
        out = spectral_divide_(A, config=SDCConfig(randomized=False), rng=RandomContext(3))
        assert out.converged
        assert out.attempts == 1
        assert out.partition.index == 3

    @pytest.mark.parametrize("randomized", [True, False])
    def test_sign_settings_reach_iteration(self, separated_real, randomized):
        from sdc_divide import SDCConfig, spectral_divide_
        from sdc_grid import RandomContext
        A0 = separated_real.clone()
        A = A0.clone()
        Q = torch.empty_like(A)
        config = SDCConfig(randomized=randomized, max_its=4, sign_max_its=60, sign_scaling="determinant")
        out = spectral_divide_(A, Q, config=config, rng=RandomContext(5))
        assert out.converged
        assert out.partition.index == 3
        assert torch.allclose(Q.mH @ A0 @ Q, A, atol=1e-10)

    def test_already_split_shortcut(self):
        from sdc_divide import spectral_divide_
        A = torch.triu(torch.arange(1.0, 17.0, dtype=torch.float64).reshape(4, 4))
        before = A.clone()
        Q = torch.full_like(A, 3.0)
        out = spectral_divide_(A, Q)
        assert out.converged
        assert out.attempts == 0
        assert out.partition.index == 2
        assert torch.equal(A, before)
        assert torch.equal(Q, torch.eye(4, dtype=A.dtype))

    def test_zero_matrix(self):
        from sdc_divide import spectral_divide_
        A = torch.zeros((3, 3), dtype=torch.float64)
        out = spectral_divide_(A)
        assert out.converged
        assert out.partition.value == 0.0

    def test_exhausted_with_zero_tolerance(self, separated_real):
        from sdc_divide import SDCConfig, spectral_divide_
        from sdc_grid import RandomContext
        A = separated_real.clone()
        out = spectral_divide_(A, config=SDCConfig(rel_tol=0.0, max_its=2), rng=RandomContext(4))
        assert not out.converged
        assert out.attempts == 2

    @pytest.mark.parametrize("n", [0, 1])
    def test_too_small(self, n):
        from sdc_divide import spectral_divide_
        with pytest.raises(ValueError):
            spectral_divide_(torch.zeros((n, n), dtype=torch.float64))

    def test_q_mismatch(self, separated_real):
        from sdc_divide import spectral_divide_
        with pytest.raises(ValueError):
            spectral_divide_(separated_real.clone(), torch.zeros((6, 6), dtype=torch.float32))
