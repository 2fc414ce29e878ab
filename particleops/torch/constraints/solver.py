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

"""Sparse LU solver for the constraint system with a reusable factorization.

`SparseLUSolver` keeps the factorization of the previous step and moves
between two states:

* ``DIRTY``: there is no valid factorization. The next solve converts the
  matrix to CSR, runs the host-side symbolic analysis and uploads a new
  factorization handle.
* ``CLEAN``: the cached factorization matches the current sparsity pattern.
  A solve only loads the new values, refactors numerically and runs the
  triangular solves on the device.

A solve is DIRTY when no factorization exists, when the constraint topology
version differs from the cached one, or when the number of nonzeros or the
column pattern of the matrix changed. A singular matrix is fatal: the handle
is released and `SingularConstraintMatrixError` propagates.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

import numpy as np
import torch
import warp as wp
from loguru import logger

from particleops.constraints.factorization import (
    LUFactorization,
    SingularConstraintMatrixError,
    analyze_sparsity,
    refactor,
    reset_factor_values,
    solve,
)
from particleops.constraints.parameters import ConstraintSolverConfig
from particleops.constraints.sparse import (
    check_sparsity_pattern_changed as wp_check_sparsity_pattern_changed,
)
from particleops.constraints.sparse import dense_to_csr as wp_dense_to_csr

__all__ = [
    "FactorizationState",
    "SolverStats",
    "SparseLUSolver",
    "dense_to_csr",
]


###########################################################################################
########################### Dense -> CSR ##################################################
###########################################################################################


@torch.library.custom_op(
    "particleops::dense_to_csr",
    mutates_args=(
        "row_counts",
        "row_offsets",
        "row_pointers",
        "columns",
        "values",
        "nnz",
    ),
)
def _dense_to_csr_op(
    matrix: torch.Tensor,
    row_counts: torch.Tensor,
    row_offsets: torch.Tensor,
    row_pointers: torch.Tensor,
    columns: torch.Tensor,
    values: torch.Tensor,
    nnz: torch.Tensor,
) -> None:
    """Internal custom op for dense -> CSR conversion.

    See Also
    --------
    particleops.constraints.sparse.dense_to_csr : Core warp launcher
    dense_to_csr : High-level wrapper function
    """
    # underlying warp launcher relies on Python API for array_scan and zero_
    # so `return_ctype` is omitted
    wp_dense_to_csr(
        matrix=wp.from_torch(matrix, dtype=wp.float64),
        row_counts=wp.from_torch(row_counts, dtype=wp.int32),
        row_offsets=wp.from_torch(row_offsets, dtype=wp.int32),
        row_pointers=wp.from_torch(row_pointers, dtype=wp.int32),
        columns=wp.from_torch(columns, dtype=wp.int32, return_ctype=True),
        values=wp.from_torch(values, dtype=wp.float64, return_ctype=True),
        nnz=wp.from_torch(nnz, dtype=wp.int32),
        device=str(matrix.device),
    )


def dense_to_csr(
    matrix: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor, int]:
    """Convert a dense float64 matrix to CSR, dropping exact zeros.

    Parameters
    ----------
    matrix : torch.Tensor, shape (num_rows, num_cols), dtype=float64
        Dense matrix.

    Returns
    -------
    row_pointers : torch.Tensor, shape (num_rows + 1,), dtype=int32
        CSR row pointers.
    columns : torch.Tensor, shape (nnz,), dtype=int32
        Column indices, ascending within each row.
    values : torch.Tensor, shape (nnz,), dtype=float64
        Nonzero values.
    nnz : int
        Number of nonzeros.

    Examples
    --------
    >>> matrix = torch.tensor([[2.0, 0.0], [1.0, 3.0]], dtype=torch.float64)
    >>> row_pointers, columns, values, nnz = dense_to_csr(matrix)
    >>> row_pointers.tolist(), columns.tolist(), nnz
    ([0, 1, 3], [0, 0, 1], 3)
    """
    if matrix.ndim != 2:
        raise ValueError(f"matrix must be 2D, got shape {tuple(matrix.shape)}")
    if matrix.dtype != torch.float64:
        raise TypeError(f"matrix must be float64, got {matrix.dtype}")

    num_rows, num_cols = matrix.shape
    device = matrix.device
    matrix = matrix.contiguous()
    row_counts = torch.zeros(num_rows, dtype=torch.int32, device=device)
    row_offsets = torch.zeros(num_rows, dtype=torch.int32, device=device)
    row_pointers = torch.zeros(num_rows + 1, dtype=torch.int32, device=device)
    columns = torch.zeros(num_rows * num_cols, dtype=torch.int32, device=device)
    values = torch.zeros(num_rows * num_cols, dtype=torch.float64, device=device)
    nnz = torch.zeros(1, dtype=torch.int32, device=device)

    _dense_to_csr_op(matrix, row_counts, row_offsets, row_pointers, columns, values, nnz)

    count = int(nnz.item())
    return row_pointers, columns[:count], values[:count], count


###########################################################################################
########################### Solver ########################################################
###########################################################################################


class FactorizationState(enum.Enum):
    """Validity of the cached factorization."""

    CLEAN = "clean"
    DIRTY = "dirty"


@dataclass
class SolverStats:
    """Counters of the two solve paths."""

    full_factorizations: int = 0
    refactorizations: int = 0


class SparseLUSolver:
    """Solver for ``A x = b`` that reuses the factorization across steps.

    The solver owns its factorization handle exclusively and releases it on
    every exit path when used as a context manager.

    Parameters
    ----------
    config : ConstraintSolverConfig, optional
        Numerical parameters. Defaults to ``ConstraintSolverConfig()``.
    device : str or torch.device, default "cpu"
        Device of the matrices passed to `solve`.

    Attributes
    ----------
    state : FactorizationState
        ``CLEAN`` while the cached factorization is valid.
    stats : SolverStats
        Number of full factorizations and fast-path refactorizations.

    Examples
    --------
    >>> with SparseLUSolver(device="cpu") as solver:
    ...     x = solver.solve(matrix, rhs, topology_version=1)
    """

    def __init__(
        self,
        config: ConstraintSolverConfig | None = None,
        device: str | torch.device = "cpu",
    ):
        self.config = config if config is not None else ConstraintSolverConfig()
        self.device = torch.device(device)
        self.state = FactorizationState.DIRTY
        self.stats = SolverStats()
        self._factorization: LUFactorization | None = None
        self._topology_version: int | None = None

    def __enter__(self) -> SparseLUSolver:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    @property
    def factorization(self) -> LUFactorization | None:
        """The cached factorization handle, ``None`` when released."""
        return self._factorization

    def release(self) -> None:
        """Drop the factorization handle and return to ``DIRTY``."""
        self._factorization = None
        self._topology_version = None
        self.state = FactorizationState.DIRTY

    def invalidate(self) -> None:
        """Force the next solve through the full factorization."""
        self.state = FactorizationState.DIRTY

    def solve(
        self,
        matrix: torch.Tensor,
        rhs: torch.Tensor,
        topology_version: int | None = None,
    ) -> torch.Tensor:
        """Solve ``matrix @ x = rhs``.

        Parameters
        ----------
        matrix : torch.Tensor, shape (n, n), dtype=float64
            Dense system matrix.
        rhs : torch.Tensor, shape (n,), dtype=float64
            Right-hand side.
        topology_version : int, optional
            Version of the structure that produced ``matrix``. A version
            different from the cached one forces a full factorization.

        Returns
        -------
        torch.Tensor, shape (n,), dtype=float64
            Solution.

        Raises
        ------
        SingularConstraintMatrixError
            If a zero pivot is found. The factorization is released first.
        """
        num_rows = matrix.shape[0]
        if matrix.shape != (num_rows, num_rows):
            raise ValueError(f"matrix must be square, got {tuple(matrix.shape)}")
        if rhs.shape != (num_rows,):
            raise ValueError(f"rhs must have shape ({num_rows},), got {tuple(rhs.shape)}")
        if num_rows == 0:
            return torch.zeros(0, dtype=torch.float64, device=matrix.device)

        row_pointers, columns, values, nnz = dense_to_csr(matrix)
        self._update_state(row_pointers, columns, nnz, topology_version)

        try:
            if self.state is FactorizationState.DIRTY:
                logger.debug(
                    "Constraint matrix changed, running full factorization "
                    "({} rows, {} nonzeros)",
                    num_rows,
                    nnz,
                )
                self._full_factorization(row_pointers, columns, values)
                self._topology_version = topology_version
                self.stats.full_factorizations += 1
            else:
                self.stats.refactorizations += 1
            solution = self._refactor_and_solve(values, rhs)
        except SingularConstraintMatrixError:
            logger.error("Singular constraint matrix.")
            self.release()
            raise

        self.state = FactorizationState.CLEAN
        return solution

    def _update_state(
        self,
        row_pointers: torch.Tensor,
        columns: torch.Tensor,
        nnz: int,
        topology_version: int | None,
    ) -> None:
        lu = self._factorization
        if lu is None or topology_version != self._topology_version:
            self.state = FactorizationState.DIRTY
            return
        if lu.num_rows != row_pointers.shape[0] - 1 or lu.nnz != nnz:
            self.state = FactorizationState.DIRTY
            return
        if self.state is FactorizationState.DIRTY:
            return

        changed = torch.zeros(1, dtype=torch.int32, device=row_pointers.device)
        wp_check_sparsity_pattern_changed(
            row_pointers=wp.from_torch(row_pointers, dtype=wp.int32),
            columns=wp.from_torch(columns, dtype=wp.int32, return_ctype=True),
            cached_row_pointers=lu.csr_row_pointers,
            cached_columns=lu.csr_columns,
            changed_flag=wp.from_torch(changed, dtype=wp.int32, return_ctype=True),
            device=self._wp_device,
        )
        if int(changed.item()) != 0:
            self.state = FactorizationState.DIRTY

    @property
    def _wp_device(self) -> str:
        return str(wp.device_from_torch(self.device))

    def _full_factorization(
        self,
        row_pointers: torch.Tensor,
        columns: torch.Tensor,
        values: torch.Tensor,
    ) -> None:
        self._factorization = None
        host_row_pointers = row_pointers.cpu().numpy()
        host_columns = columns.cpu().numpy()
        analysis = analyze_sparsity(
            host_row_pointers,
            host_columns,
            values.cpu().numpy().astype(np.float64),
            reordering=self.config.reordering,
            pivot_threshold=self.config.pivot_threshold,
            zero_pivot_tolerance=self.config.zero_pivot_tolerance,
        )
        self._factorization = LUFactorization.from_analysis(
            analysis,
            host_row_pointers,
            host_columns,
            device=self._wp_device,
        )

    def _refactor_and_solve(
        self,
        values: torch.Tensor,
        rhs: torch.Tensor,
    ) -> torch.Tensor:
        lu = self._factorization
        device = rhs.device
        wp_device = self._wp_device

        reset_factor_values(
            lu, wp.from_torch(values.contiguous(), dtype=wp.float64), wp_device
        )

        singular = torch.zeros(1, dtype=torch.int32, device=device)
        refactor(
            lu,
            self.config.zero_pivot_tolerance,
            wp.from_torch(singular, dtype=wp.int32),
            wp_device,
        )
        row = int(singular.item())
        if row > 0:
            raise SingularConstraintMatrixError(row - 1)

        solution = torch.zeros(lu.num_rows, dtype=torch.float64, device=device)
        work = torch.zeros(lu.num_rows, dtype=torch.float64, device=device)
        solve(
            lu,
            wp.from_torch(rhs.to(torch.float64).contiguous(), dtype=wp.float64),
            wp.from_torch(solution, dtype=wp.float64),
            wp.from_torch(work, dtype=wp.float64),
            wp_device,
        )
        return solution
