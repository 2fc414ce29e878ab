# SPDX-FileCopyrightText: Copyright (c) 2025 - 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for dense -> CSR conversion, the group table binding and SparseLUSolver."""

import numpy as np
import pytest
import torch

from particleops.constraints.factorization import SingularConstraintMatrixError
from particleops.constraints.group_table import (
    ConstraintTableOverflowError,
    IncompleteConstraintError,
)
from particleops.constraints.parameters import ConstraintSolverConfig
from particleops.torch.constraints import (
    FactorizationState,
    SparseLUSolver,
    build_group_table,
    dense_to_csr,
)


def banded_matrix(num_rows, device, scale=1.0):
    """Diagonally dominant tridiagonal matrix with a corner coupling."""
    matrix = 4.0 * torch.eye(num_rows, dtype=torch.float64)
    matrix += torch.diag(torch.full((num_rows - 1,), -1.0, dtype=torch.float64), 1)
    matrix += torch.diag(torch.full((num_rows - 1,), -0.5, dtype=torch.float64), -1)
    matrix[0, num_rows - 1] = 0.25
    return (matrix * scale).to(device)


class TestDenseToCsr:
    """Test the dense -> CSR binding."""

    def test_example(self, device):
        matrix = torch.tensor([[2.0, 0.0], [1.0, 3.0]], dtype=torch.float64, device=device)
        row_pointers, columns, values, nnz = dense_to_csr(matrix)
        assert row_pointers.tolist() == [0, 1, 3]
        assert columns.tolist() == [0, 0, 1]
        assert values.tolist() == [2.0, 1.0, 3.0]
        assert nnz == 3

    def test_round_trip(self, device):
        generator = torch.Generator().manual_seed(0)
        matrix = torch.randn((9, 9), generator=generator, dtype=torch.float64)
        matrix[torch.rand((9, 9), generator=generator) < 0.5] = 0.0
        matrix = matrix.to(device)

        row_pointers, columns, values, nnz = dense_to_csr(matrix)
        rebuilt = torch.sparse_csr_tensor(
            row_pointers.long(), columns.long(), values, size=(9, 9)
        ).to_dense()

        assert nnz == int((matrix != 0).sum())
        torch.testing.assert_close(rebuilt, matrix)

    def test_wrong_dtype(self, device):
        with pytest.raises(TypeError, match="float64"):
            dense_to_csr(torch.eye(2, dtype=torch.float32, device=device))


class TestBuildGroupTableBinding:
    """Test the group table binding and its errors."""

    def test_chain(self, device):
        members = torch.tensor([[0, 1], [1, 2]], dtype=torch.int32, device=device)
        rtag = torch.tensor([0, 1, 2], dtype=torch.int32, device=device)
        group_table, cpos_table, num_groups = build_group_table(members, rtag, 3, 4)
        assert group_table.shape == (3, 4, 2)
        assert cpos_table.shape == (3, 4)
        assert num_groups.tolist() == [1, 2, 1]
        assert group_table[0, 0].tolist() == [1, 0]
        assert cpos_table[0, 0].item() == 0
        assert group_table[2, 0].tolist() == [1, 1]
        assert cpos_table[2, 0].item() == 1

    def test_overflow_reports_required_width(self, device):
        members = torch.tensor(
            [[0, 1], [0, 2], [0, 3], [0, 4]], dtype=torch.int32, device=device
        )
        rtag = torch.arange(5, dtype=torch.int32, device=device)
        with pytest.raises(ConstraintTableOverflowError) as excinfo:
            build_group_table(members, rtag, 5, 2)
        assert excinfo.value.max_constraints_per_particle == 2
        assert excinfo.value.required == 4

        _, _, num_groups = build_group_table(members, rtag, 5, excinfo.value.required)
        assert num_groups.tolist() == [4, 1, 1, 1, 1]

    def test_incomplete(self, device):
        members = torch.tensor([[0, 1], [2, 1]], dtype=torch.int32, device=device)
        rtag = torch.tensor([0, 1, -1], dtype=torch.int32, device=device)
        with pytest.raises(IncompleteConstraintError) as excinfo:
            build_group_table(members, rtag, 2, 4)
        assert excinfo.value.constraint_index == 1
        assert excinfo.value.tag == 2

    def test_tag_out_of_range(self, device):
        members = torch.tensor([[0, 5]], dtype=torch.int32, device=device)
        rtag = torch.zeros(3, dtype=torch.int32, device=device)
        with pytest.raises(ValueError):
            build_group_table(members, rtag, 3, 4)


class TestSparseLUSolver:
    """Test the CLEAN / DIRTY state machine of the solver."""

    def test_solve(self, device):
        matrix = banded_matrix(12, device)
        rhs = torch.linspace(-1.0, 1.0, 12, dtype=torch.float64, device=device)
        with SparseLUSolver(device=device) as solver:
            solution = solver.solve(matrix, rhs, topology_version=1)
            assert solver.state is FactorizationState.CLEAN
            assert solver.stats.full_factorizations == 1
            assert solver.stats.refactorizations == 0
        torch.testing.assert_close(matrix @ solution, rhs, atol=1e-12, rtol=0.0)
        expected = np.linalg.solve(matrix.cpu().numpy(), rhs.cpu().numpy())
        np.testing.assert_allclose(solution.cpu().numpy(), expected, rtol=1e-12)

    def test_context_manager_releases(self, device):
        with SparseLUSolver(device=device) as solver:
            rhs = torch.ones(4, dtype=torch.float64, device=device)
            solver.solve(banded_matrix(4, device), rhs)
            assert solver.factorization is not None
        assert solver.factorization is None
        assert solver.state is FactorizationState.DIRTY

    def test_fast_path(self, device):
        """Same pattern and topology reuses the factorization."""
        rhs = torch.ones(10, dtype=torch.float64, device=device)
        with SparseLUSolver(device=device) as solver:
            solver.solve(banded_matrix(10, device), rhs, topology_version=3)
            handle = solver.factorization
            matrix = banded_matrix(10, device, scale=2.5)
            solution = solver.solve(matrix, rhs, topology_version=3)

            assert solver.factorization is handle
            assert solver.stats.full_factorizations == 1
            assert solver.stats.refactorizations == 1
            torch.testing.assert_close(matrix @ solution, rhs, atol=1e-12, rtol=0.0)

    def test_fast_path_matches_full_path(self, device):
        rhs = torch.linspace(0.0, 1.0, 8, dtype=torch.float64, device=device)
        target = banded_matrix(8, device, scale=0.7)
        target[3, 3] += 1.0
        with SparseLUSolver(device=device) as solver:
            solver.solve(banded_matrix(8, device), rhs, topology_version=0)
            fast = solver.solve(target, rhs, topology_version=0)
        with SparseLUSolver(device=device) as solver:
            full = solver.solve(target, rhs, topology_version=0)
        torch.testing.assert_close(fast, full, atol=1e-13, rtol=1e-12)

    def test_topology_version_forces_full_factorization(self, device):
        matrix = banded_matrix(6, device)
        rhs = torch.ones(6, dtype=torch.float64, device=device)
        with SparseLUSolver(device=device) as solver:
            solver.solve(matrix, rhs, topology_version=1)
            solver.solve(matrix, rhs, topology_version=2)
            assert solver.stats.full_factorizations == 2
            assert solver.stats.refactorizations == 0

    def test_pattern_change_forces_full_factorization(self, device):
        """Moving an entry keeps nnz but changes the column pattern."""
        matrix = banded_matrix(6, device)
        moved = matrix.clone()
        moved[0, 5] = 0.0
        moved[0, 4] = 0.25
        rhs = torch.ones(6, dtype=torch.float64, device=device)
        with SparseLUSolver(device=device) as solver:
            solver.solve(matrix, rhs, topology_version=1)
            solution = solver.solve(moved, rhs, topology_version=1)
            assert solver.stats.full_factorizations == 2
        torch.testing.assert_close(moved @ solution, rhs, atol=1e-12, rtol=0.0)

    def test_nnz_change_forces_full_factorization(self, device):
        matrix = banded_matrix(6, device)
        rhs = torch.ones(6, dtype=torch.float64, device=device)
        with SparseLUSolver(device=device) as solver:
            solver.solve(matrix, rhs, topology_version=1)
            solver.solve(torch.diag(torch.diag(matrix)), rhs, topology_version=1)
            assert solver.stats.full_factorizations == 2

    def test_invalidate(self, device):
        matrix = banded_matrix(5, device)
        rhs = torch.ones(5, dtype=torch.float64, device=device)
        with SparseLUSolver(device=device) as solver:
            solver.solve(matrix, rhs)
            solver.invalidate()
            assert solver.state is FactorizationState.DIRTY
            solver.solve(matrix, rhs)
            assert solver.stats.full_factorizations == 2

    @pytest.mark.parametrize("reordering", ["rcm", "natural"])
    def test_reorderings(self, device, reordering):
        config = ConstraintSolverConfig(reordering=reordering)
        matrix = banded_matrix(15, device)
        rhs = torch.arange(15, dtype=torch.float64, device=device)
        with SparseLUSolver(config, device=device) as solver:
            solution = solver.solve(matrix, rhs)
        torch.testing.assert_close(matrix @ solution, rhs, atol=1e-11, rtol=0.0)

    def test_singular_on_full_factorization(self, device, log_messages):
        matrix = torch.ones((2, 2), dtype=torch.float64, device=device)
        rhs = torch.ones(2, dtype=torch.float64, device=device)
        solver = SparseLUSolver(device=device)
        with pytest.raises(SingularConstraintMatrixError):
            solver.solve(matrix, rhs, topology_version=1)
        assert solver.factorization is None
        assert solver.state is FactorizationState.DIRTY
        assert "ERROR:Singular constraint matrix." in log_messages

    def test_singular_on_fast_path(self, device, log_messages):
        """A zero pivot found by the refactorization also releases the handle."""
        rhs = torch.ones(2, dtype=torch.float64, device=device)
        solver = SparseLUSolver(device=device)
        solver.solve(
            torch.tensor([[2.0, 1.0], [1.0, 2.0]], dtype=torch.float64, device=device),
            rhs,
            topology_version=1,
        )
        with pytest.raises(SingularConstraintMatrixError, match="Zero pivot"):
            solver.solve(
                torch.ones((2, 2), dtype=torch.float64, device=device),
                rhs,
                topology_version=1,
            )
        assert solver.factorization is None
        assert solver.state is FactorizationState.DIRTY
        assert solver.stats.refactorizations == 1
        assert any(message.startswith("ERROR:") for message in log_messages)

    def test_recovers_after_singular(self, device):
        rhs = torch.ones(3, dtype=torch.float64, device=device)
        with SparseLUSolver(device=device) as solver:
            with pytest.raises(SingularConstraintMatrixError):
                solver.solve(torch.ones((3, 3), dtype=torch.float64, device=device), rhs)
            solution = solver.solve(banded_matrix(3, device), rhs)
        assert torch.isfinite(solution).all()

    def test_empty_system(self, device):
        with SparseLUSolver(device=device) as solver:
            solution = solver.solve(
                torch.zeros((0, 0), dtype=torch.float64, device=device),
                torch.zeros(0, dtype=torch.float64, device=device),
            )
        assert solution.shape == (0,)

    def test_shape_errors(self, device):
        solver = SparseLUSolver(device=device)
        with pytest.raises(ValueError, match="square"):
            solver.solve(
                torch.zeros((2, 3), dtype=torch.float64, device=device),
                torch.zeros(2, dtype=torch.float64, device=device),
            )
        with pytest.raises(ValueError, match="rhs"):
            solver.solve(
                torch.eye(2, dtype=torch.float64, device=device),
                torch.zeros(3, dtype=torch.float64, device=device),
            )
