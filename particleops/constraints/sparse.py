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

"""Core warp kernels and launchers for dense -> CSR conversion.

The constraint matrix is assembled densely every step and converted to
compressed sparse row form on the device. Exact zeros are dropped. The
converted pattern is compared with the pattern of the cached factorization
to decide whether the symbolic analysis can be reused.
See `particleops.torch.constraints` for PyTorch bindings.
"""

import warp as wp

__all__ = [
    "dense_to_csr",
    "check_sparsity_pattern_changed",
]


@wp.kernel(enable_backward=False)
def _count_row_nonzeros(
    matrix: wp.array2d(dtype=wp.float64),
    row_counts: wp.array(dtype=wp.int32),
) -> None:
    """Count the nonzero entries of each row.

    Notes
    -----
    - Thread launch: One thread per row (dim=num_rows)
    """
    i = wp.tid()
    count = wp.int32(0)
    for j in range(matrix.shape[1]):
        if matrix[i, j] != wp.float64(0.0):
            count += 1
    row_counts[i] = count


@wp.kernel(enable_backward=False)
def _finalize_row_pointers(
    row_counts: wp.array(dtype=wp.int32),
    row_offsets: wp.array(dtype=wp.int32),
    row_pointers: wp.array(dtype=wp.int32),
    nnz: wp.array(dtype=wp.int32),
) -> None:
    """Copy the exclusive scan into row pointers and append the total.

    Notes
    -----
    - Thread launch: One thread per row pointer (dim=num_rows + 1)
    """
    i = wp.tid()
    num_rows = row_counts.shape[0]
    if i < num_rows:
        row_pointers[i] = row_offsets[i]
    else:
        total = row_offsets[num_rows - 1] + row_counts[num_rows - 1]
        row_pointers[num_rows] = total
        nnz[0] = total


@wp.kernel(enable_backward=False)
def _fill_csr(
    matrix: wp.array2d(dtype=wp.float64),
    row_pointers: wp.array(dtype=wp.int32),
    columns: wp.array(dtype=wp.int32),
    values: wp.array(dtype=wp.float64),
) -> None:
    """Gather the nonzeros of each row in ascending column order.

    Notes
    -----
    - Thread launch: One thread per row (dim=num_rows)
    """
    i = wp.tid()
    pos = row_pointers[i]
    for j in range(matrix.shape[1]):
        value = matrix[i, j]
        if value != wp.float64(0.0):
            columns[pos] = j
            values[pos] = value
            pos += 1


@wp.kernel(enable_backward=False)
def _compare_row_patterns(
    row_pointers: wp.array(dtype=wp.int32),
    columns: wp.array(dtype=wp.int32),
    cached_row_pointers: wp.array(dtype=wp.int32),
    cached_columns: wp.array(dtype=wp.int32),
    changed_flag: wp.array(dtype=wp.int32),
) -> None:
    """Flag rows whose column pattern differs from the cached pattern.

    Parameters
    ----------
    row_pointers, columns : wp.array, dtype=wp.int32
        New CSR structure.
    cached_row_pointers, cached_columns : wp.array, dtype=wp.int32
        CSR structure of the cached factorization.
    changed_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Set to 1 when any row differs. Must be zeroed.

    Notes
    -----
    - Thread launch: One thread per row (dim=num_rows)
    - Both structures must have the same number of rows
    """
    i = wp.tid()
    start = row_pointers[i]
    end = row_pointers[i + 1]

    if start != cached_row_pointers[i] or end != cached_row_pointers[i + 1]:
        changed_flag[0] = 1
        return

    for k in range(start, end):
        if columns[k] != cached_columns[k]:
            changed_flag[0] = 1
            return


###########################################################################################
########################### Warp Launchers ###############################################
###########################################################################################


def dense_to_csr(
    matrix: wp.array,
    row_counts: wp.array,
    row_offsets: wp.array,
    row_pointers: wp.array,
    columns: wp.array,
    values: wp.array,
    nnz: wp.array,
    device: str,
) -> None:
    """Core warp launcher converting a dense float64 matrix to CSR.

    Parameters
    ----------
    matrix : wp.array2d, shape (num_rows, num_cols), dtype=wp.float64
        Dense matrix.
    row_counts : wp.array, shape (num_rows,), dtype=wp.int32
        SCRATCH: Nonzeros per row.
    row_offsets : wp.array, shape (num_rows,), dtype=wp.int32
        SCRATCH: Exclusive scan of row_counts.
    row_pointers : wp.array, shape (num_rows + 1,), dtype=wp.int32
        OUTPUT: CSR row pointers.
    columns : wp.array, shape (capacity,), dtype=wp.int32
        OUTPUT: Column indices, ascending within each row.
    values : wp.array, shape (capacity,), dtype=wp.float64
        OUTPUT: Nonzero values.
    nnz : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Number of stored entries.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').

    Notes
    -----
    - row_counts and row_offsets must be regular warp arrays (not ctypes)
      since ``wp.utils.array_scan`` is used.
    - columns and values need room for ``num_rows * num_cols`` entries in
      the worst case. Capacity is not checked.
    """
    num_rows = matrix.shape[0]
    if num_rows == 0:
        nnz.zero_()
        row_pointers.zero_()
        return

    wp.launch(
        kernel=_count_row_nonzeros,
        dim=num_rows,
        inputs=[matrix, row_counts],
        device=device,
    )

    wp.utils.array_scan(row_counts, row_offsets, inclusive=False)

    wp.launch(
        kernel=_finalize_row_pointers,
        dim=num_rows + 1,
        inputs=[row_counts, row_offsets, row_pointers, nnz],
        device=device,
    )

    wp.launch(
        kernel=_fill_csr,
        dim=num_rows,
        inputs=[matrix, row_pointers, columns, values],
        device=device,
    )


def check_sparsity_pattern_changed(
    row_pointers: wp.array,
    columns: wp.array,
    cached_row_pointers: wp.array,
    cached_columns: wp.array,
    changed_flag: wp.array,
    device: str,
) -> None:
    """Core warp launcher comparing a CSR structure with a cached one.

    Parameters
    ----------
    row_pointers, columns : wp.array, dtype=wp.int32
        New CSR structure.
    cached_row_pointers, cached_columns : wp.array, dtype=wp.int32
        Cached CSR structure with the same number of rows.
    changed_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: 1 when the patterns differ, must be zeroed by the caller.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').

    Notes
    -----
    - A differing number of rows or nonzeros must be detected by the caller
      before launching; this launcher assumes equal row counts.
    """
    num_rows = row_pointers.shape[0] - 1
    if num_rows <= 0:
        return

    wp.launch(
        kernel=_compare_row_patterns,
        dim=num_rows,
        inputs=[
            row_pointers,
            columns,
            cached_row_pointers,
            cached_columns,
            changed_flag,
        ],
        device=device,
    )
