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

"""Sparse LU factorization of the constraint matrix.

The factorization is split into a host-side symbolic phase that runs only
when the sparsity pattern of the constraint matrix changes, and a device-side
numeric phase that runs every step.

Symbolic phase (`analyze_sparsity`, NumPy and SciPy):

1. Symmetric fill-reducing reordering (reverse Cuthill-McKee or natural).
2. Pivoted LU of the reordered matrix with SuperLU (``splu``) to fix a static
   row pivot order, with a zero-pivot check.
3. The combined ``L\\U`` pattern, read from the SuperLU factors and closed
   under elimination, with a unit lower triangle stored implicitly.
4. A value map from the CSR entries of the matrix into the ``L\\U`` pattern.
5. Level schedules for the refactorization and both triangular solves.

Numeric phase (warp kernels, one launch per level):

1. Reset the ``L\\U`` values through the value map.
2. Row-wise numeric refactorization without pivoting. A pivot with magnitude
   at or below the tolerance is reported through ``singular_flag``.
3. Row permutation of the right-hand side, forward and backward substitution,
   column permutation of the solution.
"""

from dataclasses import dataclass

import numpy as np
import scipy.sparse as sp
import warp as wp
from scipy.sparse.csgraph import reverse_cuthill_mckee
from scipy.sparse.linalg import SuperLU, splu


class SingularConstraintMatrixError(RuntimeError):
    """Exception raised when the constraint matrix has a zero pivot.

    A singular constraint matrix means that the constraint configuration is
    degenerate (for example redundant or contradictory constraints) and the
    Lagrange multipliers are not defined. There is no recovery.

    Parameters
    ----------
    row : int
        Row of the permuted system in which the zero pivot was found.
    """

    def __init__(self, row: int):
        super().__init__(f"Singular constraint matrix. Zero pivot in row {row}.")
        self.row = row


__all__ = [
    "SingularConstraintMatrixError",
    "SymbolicAnalysis",
    "LUFactorization",
    "analyze_sparsity",
    "reset_factor_values",
    "refactor",
    "solve",
]


###########################################################################################
########################### Symbolic Analysis (host) ######################################
###########################################################################################


@dataclass
class SymbolicAnalysis:
    """Host-side result of the symbolic phase.

    Attributes
    ----------
    num_rows : int
        Dimension of the system.
    row_permutation : np.ndarray, shape (num_rows,), dtype=int32
        ``P``: row ``k`` of the factored matrix is row ``P[k]`` of the input.
    column_permutation : np.ndarray, shape (num_rows,), dtype=int32
        ``Q``: column ``k`` of the factored matrix is column ``Q[k]`` of the
        input.
    row_pointers : np.ndarray, shape (num_rows + 1,), dtype=int32
        Row pointers of the combined ``L\\U`` pattern.
    columns : np.ndarray, shape (lu_nnz,), dtype=int32
        Column indices of the ``L\\U`` pattern, ascending within each row.
    diagonal : np.ndarray, shape (num_rows,), dtype=int32
        Position of the diagonal entry of each row in ``columns``.
    value_map : np.ndarray, shape (nnz,), dtype=int32
        Position in the ``L\\U`` pattern of every CSR entry of the input.
    refactor_rows, refactor_levels : np.ndarray
        Rows grouped by level for the refactorization and the forward
        substitution, and the level boundaries into ``refactor_rows``.
    backward_rows, backward_levels : np.ndarray
        Same for the backward substitution.
    """

    num_rows: int
    row_permutation: np.ndarray
    column_permutation: np.ndarray
    row_pointers: np.ndarray
    columns: np.ndarray
    diagonal: np.ndarray
    value_map: np.ndarray
    refactor_rows: np.ndarray
    refactor_levels: np.ndarray
    backward_rows: np.ndarray
    backward_levels: np.ndarray

    @property
    def lu_nnz(self) -> int:
        """Number of entries of the combined ``L\\U`` pattern."""
        return int(self.row_pointers[-1])

    @property
    def num_refactor_levels(self) -> int:
        return len(self.refactor_levels) - 1


def _ones(matrix: sp.spmatrix) -> sp.csr_matrix:
    """Structure of ``matrix`` with every stored entry set to one."""
    matrix = sp.csr_matrix(matrix)
    return sp.csr_matrix(
        (np.ones(len(matrix.indices)), matrix.indices, matrix.indptr),
        shape=matrix.shape,
    )


def _fill_pattern(
    permuted: sp.csr_matrix, factor: SuperLU
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Pattern of ``L + U`` for an LU factorization of ``permuted`` without pivoting.

    The pattern starts from the ``L`` and ``U`` factors SuperLU computed for
    ``permuted``. Those omit entries whose value cancelled to exactly zero, so
    the matrix entries and the diagonal are added back and the pattern is
    closed under elimination: ``(i, j)`` is filled when ``(i, k)`` and
    ``(k, j)`` are for some ``k < min(i, j)``.
    """
    num_rows = permuted.shape[0]
    pattern = (
        _ones(permuted)
        + _ones(factor.L)
        + _ones(factor.U)
        + sp.identity(num_rows, format="csr")
    ).tocsr()

    while True:
        lower = sp.tril(pattern, k=-1, format="csr")
        upper = sp.triu(pattern, k=1, format="csr")
        closed = (pattern + _ones(lower @ upper)).tocsr()
        if closed.nnz == pattern.nnz:
            break
        pattern = closed

    pattern.sort_indices()
    row_pointers = pattern.indptr.astype(np.int32)
    columns = pattern.indices.astype(np.int32)
    entry_rows = np.repeat(np.arange(num_rows), np.diff(row_pointers))
    diagonal = np.flatnonzero(entry_rows == columns).astype(np.int32)
    return row_pointers, columns, diagonal


def _level_schedule(levels: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Group rows by level; rows within a level are independent."""
    rows = np.argsort(levels, kind="stable").astype(np.int32)
    counts = np.bincount(levels, minlength=1) if len(levels) else np.zeros(0, int)
    pointers = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)
    return rows, pointers


def _levels(
    row_pointers: np.ndarray, columns: np.ndarray, diagonal: np.ndarray, lower: bool
) -> np.ndarray:
    """Level of each row in the dependency graph of one triangle."""
    num_rows = len(diagonal)
    levels = np.zeros(num_rows, dtype=np.int64)
    order = range(num_rows) if lower else range(num_rows - 1, -1, -1)
    for i in order:
        if lower:
            deps = columns[row_pointers[i] : diagonal[i]]
        else:
            deps = columns[diagonal[i] + 1 : row_pointers[i + 1]]
        if len(deps):
            levels[i] = levels[deps].max() + 1
    return levels


def analyze_sparsity(
    row_pointers: np.ndarray,
    columns: np.ndarray,
    values: np.ndarray,
    reordering: str = "rcm",
    pivot_threshold: float = 1.0,
    zero_pivot_tolerance: float = 1e-14,
) -> SymbolicAnalysis:
    """Run the symbolic phase of the factorization on the host.

    Parameters
    ----------
    row_pointers : np.ndarray, shape (num_rows + 1,)
        CSR row pointers of the constraint matrix.
    columns : np.ndarray, shape (nnz,)
        CSR column indices, ascending within each row.
    values : np.ndarray, shape (nnz,), dtype=float64
        CSR values, used to choose the pivot order.
    reordering : {"rcm", "natural"}
        Symmetric fill-reducing reordering.
    pivot_threshold : float
        SuperLU diagonal pivoting threshold in [0, 1].
    zero_pivot_tolerance : float
        Pivots with magnitude at or below this value are zero.

    Returns
    -------
    SymbolicAnalysis
        Permutations, ``L\\U`` pattern, value map and level schedules.

    Raises
    ------
    SingularConstraintMatrixError
        If the matrix is structurally or numerically singular.
    ValueError
        If ``reordering`` is unknown.
    """
    num_rows = len(row_pointers) - 1
    matrix = sp.csr_matrix(
        (
            np.asarray(values, dtype=np.float64),
            np.asarray(columns, dtype=np.int32),
            np.asarray(row_pointers, dtype=np.int32),
        ),
        shape=(num_rows, num_rows),
    )

    if reordering == "rcm":
        order = reverse_cuthill_mckee(matrix, symmetric_mode=False).astype(np.int64)
    elif reordering == "natural":
        order = np.arange(num_rows, dtype=np.int64)
    else:
        raise ValueError(f"Unknown reordering {reordering!r}")

    reordered = matrix[order][:, order]

    try:
        factor = splu(
            reordered.tocsc(),
            permc_spec="NATURAL",
            diag_pivot_thresh=pivot_threshold,
        )
    except RuntimeError as e:
        raise SingularConstraintMatrixError(_first_empty_row(reordered)) from e

    pivots = np.abs(factor.U.diagonal())
    zero = np.flatnonzero(pivots <= zero_pivot_tolerance)
    if len(zero):
        raise SingularConstraintMatrixError(int(zero[0]))

    # Pr A Pc = L U; invert the SuperLU permutations to source indices
    source_rows = np.argsort(factor.perm_r)
    source_columns = np.argsort(factor.perm_c)
    row_permutation = order[source_rows]
    column_permutation = order[source_columns]

    permuted = matrix[row_permutation][:, column_permutation].tocsr()
    permuted.sort_indices()
    lu_row_pointers, lu_columns, diagonal = _fill_pattern(permuted, factor)

    # Locate every input entry (i, j) at (Pinv[i], Qinv[j]) in the pattern
    row_inverse = np.argsort(row_permutation)
    column_inverse = np.argsort(column_permutation)
    entry_rows = np.repeat(np.arange(num_rows), np.diff(matrix.indptr))
    keys = (
        row_inverse[entry_rows].astype(np.int64) * num_rows
        + column_inverse[matrix.indices].astype(np.int64)
    )
    lu_keys = (
        np.repeat(np.arange(num_rows, dtype=np.int64), np.diff(lu_row_pointers))
        * num_rows
        + lu_columns.astype(np.int64)
    )
    value_map = np.searchsorted(lu_keys, keys).astype(np.int32)

    refactor_rows, refactor_levels = _level_schedule(
        _levels(lu_row_pointers, lu_columns, diagonal, lower=True)
    )
    backward_rows, backward_levels = _level_schedule(
        _levels(lu_row_pointers, lu_columns, diagonal, lower=False)
    )

    return SymbolicAnalysis(
        num_rows=num_rows,
        row_permutation=row_permutation.astype(np.int32),
        column_permutation=column_permutation.astype(np.int32),
        row_pointers=lu_row_pointers,
        columns=lu_columns,
        diagonal=diagonal,
        value_map=value_map,
        refactor_rows=refactor_rows,
        refactor_levels=refactor_levels,
        backward_rows=backward_rows,
        backward_levels=backward_levels,
    )


def _first_empty_row(matrix: sp.csr_matrix) -> int:
    """First row without entries, or 0 when every row has one."""
    empty = np.flatnonzero(np.diff(matrix.indptr) == 0)
    return int(empty[0]) if len(empty) else 0


###########################################################################################
########################### Device Factorization ##########################################
###########################################################################################


@dataclass
class LUFactorization:
    """Device-resident factorization handle.

    Holds the ``L\\U`` pattern and values, permutations, value map and level
    schedules on the device, plus the CSR pattern of the matrix it was built
    for. Level boundaries stay on the host since they drive the launches.
    """

    num_rows: int
    nnz: int
    row_permutation: wp.array
    column_permutation: wp.array
    row_pointers: wp.array
    columns: wp.array
    diagonal: wp.array
    values: wp.array
    value_map: wp.array
    refactor_rows: wp.array
    refactor_levels: np.ndarray
    backward_rows: wp.array
    backward_levels: np.ndarray
    csr_row_pointers: wp.array
    csr_columns: wp.array
    device: str

    @classmethod
    def from_analysis(
        cls,
        analysis: SymbolicAnalysis,
        csr_row_pointers: np.ndarray,
        csr_columns: np.ndarray,
        device: str,
    ) -> "LUFactorization":
        """Upload a symbolic analysis to ``device``."""

        def upload(array: np.ndarray, dtype=wp.int32) -> wp.array:
            return wp.array(np.ascontiguousarray(array), dtype=dtype, device=device)

        return cls(
            num_rows=analysis.num_rows,
            nnz=len(csr_columns),
            row_permutation=upload(analysis.row_permutation),
            column_permutation=upload(analysis.column_permutation),
            row_pointers=upload(analysis.row_pointers),
            columns=upload(analysis.columns),
            diagonal=upload(analysis.diagonal),
            values=wp.zeros(analysis.lu_nnz, dtype=wp.float64, device=device),
            value_map=upload(analysis.value_map),
            refactor_rows=upload(analysis.refactor_rows),
            refactor_levels=analysis.refactor_levels,
            backward_rows=upload(analysis.backward_rows),
            backward_levels=analysis.backward_levels,
            csr_row_pointers=upload(np.asarray(csr_row_pointers, dtype=np.int32)),
            csr_columns=upload(np.asarray(csr_columns, dtype=np.int32)),
            device=device,
        )


@wp.kernel(enable_backward=False)
def _zero_values(values: wp.array(dtype=wp.float64)) -> None:
    """Zero the factor values (fill-in entries start at zero)."""
    i = wp.tid()
    values[i] = wp.float64(0.0)


@wp.kernel(enable_backward=False)
def _scatter_values(
    csr_values: wp.array(dtype=wp.float64),
    value_map: wp.array(dtype=wp.int32),
    values: wp.array(dtype=wp.float64),
) -> None:
    """Copy CSR entries to their slot in the factor pattern.

    Notes
    -----
    - Thread launch: One thread per CSR entry (dim=nnz)
    """
    e = wp.tid()
    values[value_map[e]] = csr_values[e]


@wp.kernel(enable_backward=False)
def _refactor_level(
    level_rows: wp.array(dtype=wp.int32),
    level_start: wp.int32,
    row_pointers: wp.array(dtype=wp.int32),
    columns: wp.array(dtype=wp.int32),
    diagonal: wp.array(dtype=wp.int32),
    values: wp.array(dtype=wp.float64),
    zero_pivot_tolerance: wp.float64,
    singular_flag: wp.array(dtype=wp.int32),
) -> None:
    """Numerically factor the rows of one level.

    For every ``k < i`` in the pattern of row ``i`` (ascending), the
    multiplier ``l_ik = a_ik / u_kk`` is stored and row ``k`` of ``U`` is
    subtracted from the remainder of row ``i``. Both rows are sorted by
    column, so the update is a merge.

    Parameters
    ----------
    level_rows : wp.array, dtype=wp.int32
        Rows grouped by level.
    level_start : wp.int32
        Offset of this level in level_rows.
    row_pointers, columns, diagonal : wp.array, dtype=wp.int32
        Combined ``L\\U`` pattern.
    values : wp.array, dtype=wp.float64
        OUTPUT: Factor values, updated in place.
    zero_pivot_tolerance : wp.float64
        Pivot magnitude at or below which the row is reported singular.
    singular_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Largest singular row + 1, else unchanged.

    Notes
    -----
    - Thread launch: One thread per row of the level
    - All rows of earlier levels must be complete
    """
    t = wp.tid()
    i = level_rows[level_start + t]
    row_end = row_pointers[i + 1]
    diag_i = diagonal[i]

    idx = row_pointers[i]
    while idx < diag_i:
        k = columns[idx]
        multiplier = values[idx] / values[diagonal[k]]
        values[idx] = multiplier

        p = diagonal[k] + 1
        p_end = row_pointers[k + 1]
        q = idx + 1
        while p < p_end:
            c = columns[p]
            while q < row_end:
                if columns[q] >= c:
                    break
                q += 1
            if q < row_end:
                if columns[q] == c:
                    values[q] = values[q] - multiplier * values[p]
            p += 1
        idx += 1

    if wp.abs(values[diag_i]) <= zero_pivot_tolerance:
        wp.atomic_max(singular_flag, 0, i + 1)


@wp.kernel(enable_backward=False)
def _permute_rhs(
    rhs: wp.array(dtype=wp.float64),
    row_permutation: wp.array(dtype=wp.int32),
    work: wp.array(dtype=wp.float64),
) -> None:
    """``work[k] = rhs[P[k]]``."""
    k = wp.tid()
    work[k] = rhs[row_permutation[k]]


@wp.kernel(enable_backward=False)
def _forward_level(
    level_rows: wp.array(dtype=wp.int32),
    level_start: wp.int32,
    row_pointers: wp.array(dtype=wp.int32),
    columns: wp.array(dtype=wp.int32),
    diagonal: wp.array(dtype=wp.int32),
    values: wp.array(dtype=wp.float64),
    work: wp.array(dtype=wp.float64),
) -> None:
    """Forward substitution with the unit lower triangle for one level."""
    t = wp.tid()
    i = level_rows[level_start + t]
    s = work[i]
    for idx in range(row_pointers[i], diagonal[i]):
        s = s - values[idx] * work[columns[idx]]
    work[i] = s


@wp.kernel(enable_backward=False)
def _backward_level(
    level_rows: wp.array(dtype=wp.int32),
    level_start: wp.int32,
    row_pointers: wp.array(dtype=wp.int32),
    columns: wp.array(dtype=wp.int32),
    diagonal: wp.array(dtype=wp.int32),
    values: wp.array(dtype=wp.float64),
    work: wp.array(dtype=wp.float64),
) -> None:
    """Backward substitution with the upper triangle for one level."""
    t = wp.tid()
    i = level_rows[level_start + t]
    s = work[i]
    for idx in range(diagonal[i] + 1, row_pointers[i + 1]):
        s = s - values[idx] * work[columns[idx]]
    work[i] = s / values[diagonal[i]]


@wp.kernel(enable_backward=False)
def _scatter_solution(
    work: wp.array(dtype=wp.float64),
    column_permutation: wp.array(dtype=wp.int32),
    solution: wp.array(dtype=wp.float64),
) -> None:
    """``solution[Q[k]] = work[k]``."""
    k = wp.tid()
    solution[column_permutation[k]] = work[k]


###########################################################################################
########################### Warp Launchers ###############################################
###########################################################################################


def _launch_levels(kernel, rows: wp.array, levels: np.ndarray, inputs: list, device: str):
    for level in range(len(levels) - 1):
        start = int(levels[level])
        count = int(levels[level + 1]) - start
        wp.launch(
            kernel=kernel,
            dim=count,
            inputs=[rows, wp.int32(start), *inputs],
            device=device,
        )


def reset_factor_values(
    lu: LUFactorization,
    csr_values: wp.array,
    device: str,
) -> None:
    """Core warp launcher loading new matrix values into the factor pattern.

    Parameters
    ----------
    lu : LUFactorization
        Factorization handle. ``lu.values`` is overwritten.
    csr_values : wp.array, shape (>= lu.nnz,), dtype=wp.float64
        CSR values of a matrix with the pattern ``lu`` was built for.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    wp.launch(
        kernel=_zero_values,
        dim=lu.values.shape[0],
        inputs=[lu.values],
        device=device,
    )
    if lu.nnz == 0:
        return
    wp.launch(
        kernel=_scatter_values,
        dim=lu.nnz,
        inputs=[csr_values, lu.value_map, lu.values],
        device=device,
    )


def refactor(
    lu: LUFactorization,
    zero_pivot_tolerance: float,
    singular_flag: wp.array,
    device: str,
) -> None:
    """Core warp launcher for the numeric refactorization.

    Parameters
    ----------
    lu : LUFactorization
        Factorization handle with values loaded by `reset_factor_values`.
    zero_pivot_tolerance : float
        Pivots with magnitude at or below this value are zero.
    singular_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Singular row + 1 when a zero pivot is found, else untouched.
        Must be zeroed by the caller.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').

    Notes
    -----
    - One launch per level; rows within a level are factored in parallel.
    """
    _launch_levels(
        _refactor_level,
        lu.refactor_rows,
        lu.refactor_levels,
        [
            lu.row_pointers,
            lu.columns,
            lu.diagonal,
            lu.values,
            wp.float64(zero_pivot_tolerance),
            singular_flag,
        ],
        device,
    )


def solve(
    lu: LUFactorization,
    rhs: wp.array,
    solution: wp.array,
    work: wp.array,
    device: str,
) -> None:
    """Core warp launcher solving ``A x = b`` with a refactored handle.

    Parameters
    ----------
    lu : LUFactorization
        Refactored factorization handle.
    rhs : wp.array, shape (num_rows,), dtype=wp.float64
        Right-hand side ``b``.
    solution : wp.array, shape (num_rows,), dtype=wp.float64
        OUTPUT: Solution ``x``.
    work : wp.array, shape (num_rows,), dtype=wp.float64
        SCRATCH: Permuted intermediate vector.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    if lu.num_rows == 0:
        return

    wp.launch(
        kernel=_permute_rhs,
        dim=lu.num_rows,
        inputs=[rhs, lu.row_permutation, work],
        device=device,
    )
    triangle = [lu.row_pointers, lu.columns, lu.diagonal, lu.values, work]
    _launch_levels(_forward_level, lu.refactor_rows, lu.refactor_levels, triangle, device)
    _launch_levels(
        _backward_level, lu.backward_rows, lu.backward_levels, triangle, device
    )
    wp.launch(
        kernel=_scatter_solution,
        dim=lu.num_rows,
        inputs=[work, lu.column_permutation, solution],
        device=device,
    )
