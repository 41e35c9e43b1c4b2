"""Tests for partition selection."""
import pytest
import torch


def brute_force_partition(A):
    n = A.shape[0]
    norms = [float(A[k:, :k].abs().sum()) for k in range(1, n)]
    j = min(range(len(norms)), key=lambda i: norms[i])
    return j + 1, norms[j]


@pytest.fixture
def dense7():
    g = torch.Generator().manual_seed(7)
    return torch.randn((7, 7), generator=g, dtype=torch.float64)


class TestComputePartition:

    @pytest.mark.parametrize("n", [0, 1])
    def test_sentinel_for_tiny(self, n):
        from sdc_partition import NO_PARTITION, compute_partition
        part = compute_partition(torch.zeros((n, n), dtype=torch.float64))
        assert part == NO_PARTITION
        assert part.is_sentinel

    def test_matches_brute_force(self, dense7):
        from sdc_partition import compute_partition
        idx, val = brute_force_partition(dense7)
        part = compute_partition(dense7)
        assert part.index == idx
        assert part.value == pytest.approx(val, rel=1e-12)

    def test_index_in_range(self, dense7):
        from sdc_partition import compute_partition
        for n in range(2, 8):
            part = compute_partition(dense7[:n, :n])
            assert 1 <= part.index <= n - 1
            assert part.value >= 0.0

    def test_block_triangular_split(self, dense7):
        from sdc_partition import compute_partition
        A = dense7.clone()
        A[3:, :3] = 0.0
        part = compute_partition(A)
        assert part.index == 3
        one = float(torch.linalg.matrix_norm(A, ord=1))
        assert part.value == pytest.approx(0.0, abs=1e-12 * one)

    def test_first_minimizer_on_ties(self):
        from sdc_partition import compute_partition
        A = torch.triu(torch.ones((5, 5), dtype=torch.float64))
        part = compute_partition(A)
        assert part.index == 1
        assert part.value == 0.0

    def test_complex(self):
        from sdc_partition import compute_partition
        g = torch.Generator().manual_seed(3)
        A = torch.randn((6, 6), generator=g, dtype=torch.complex128)
        idx, val = brute_force_partition(A)
        part = compute_partition(A)
        assert part.index == idx
        assert part.value == pytest.approx(val, rel=1e-12)

    def test_float32_accumulates_in_double(self):
        from sdc_partition import lower_abs_sums
        A = torch.ones((4, 4), dtype=torch.float32)
        col, row = lower_abs_sums(A)
        assert col.dtype == torch.float64
        assert col.tolist() == [3.0, 2.0, 1.0]
        assert row.tolist() == [1.0, 2.0, 3.0]


class TestPartitionResult:

    def test_normalized(self):
        from sdc_partition import PartitionResult
        assert PartitionResult(2, 4.0).normalized(2.0) == PartitionResult(2, 2.0)

    def test_normalized_zero_scale(self):
        from sdc_partition import PartitionResult
        assert PartitionResult(1, 0.0).normalized(0.0) == PartitionResult(1, 0.0)

    def test_sentinel_not_normalized(self):
        from sdc_partition import NO_PARTITION
        assert NO_PARTITION.normalized(10.0) == NO_PARTITION

    def test_machine_eps_complex(self):
        from sdc_partition import machine_eps
        assert machine_eps(torch.complex128) == torch.finfo(torch.float64).eps
        assert machine_eps(torch.float32) == torch.finfo(torch.float32).eps

    def test_one_norm_empty(self):
        from sdc_partition import one_norm
        assert one_norm(torch.zeros((0, 0))) == 0.0


class TestBalancedPartition:

    @pytest.mark.parametrize("n,expected", [(2, 1), (3, 1), (5, 2), (6, 3), (9, 4)])
    def test_triangular_picks_middle(self, n, expected):
        from sdc_partition import balanced_partition
        A = torch.triu(torch.ones((n, n), dtype=torch.float64))
        part = balanced_partition(A)
        assert part.index == expected
        assert part.value == 0.0

    def test_restricted_to_admissible(self, dense7):
        from sdc_partition import balanced_partition, compute_partition
        A = torch.triu(dense7)
        A[1, 0] = 1.0
        A[3, 2] = 1.0
        # k = 1 and k = 3 are blocked; 2, 4, 5, 6 are admissible.
        part = balanced_partition(A, tol=0.0)
        assert part.index == 4
        assert compute_partition(A).index == 2
        A[:, :] = dense7
        A[2:, :2] = 0.0
        part = balanced_partition(A, tol=1e-12)
        assert part.index == 2

    def test_falls_back_to_minimizer(self, dense7):
        from sdc_partition import balanced_partition, compute_partition
        assert balanced_partition(dense7, tol=0.0) == compute_partition(dense7)

    def test_norms(self, dense7):
        from sdc_partition import partition_norms
        norms = partition_norms(dense7)
        expected = torch.tensor([float(dense7[k:, :k].abs().sum()) for k in range(1, 7)], dtype=torch.float64)
        assert torch.allclose(norms, expected, rtol=1e-12)
