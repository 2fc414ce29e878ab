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

r"""
Distance Constraints
====================

Core warp kernels, launchers and host-side analysis for holonomic distance
constraints solved with Lagrange multipliers.

Available Submodules
--------------------

parameters
    ``ConstraintSolverConfig`` with the numerical knobs of the solver.

group_table
    Per-particle adjacency list of the constraint graph.

matrix
    Assembly of the constraint matrix and right-hand side, and the
    writeback of constraint forces from Lagrange multipliers.

sparse
    Dense to CSR conversion and sparsity pattern comparison.

factorization
    Host-side symbolic analysis (reordering, pivot order, fill, level
    schedules) and device-side numeric refactorization and triangular solves.
"""

from .factorization import (
    LUFactorization,
    SingularConstraintMatrixError,
    SymbolicAnalysis,
    analyze_sparsity,
    refactor,
    reset_factor_values,
    solve,
)
from .group_table import (
    ConstraintTableOverflowError,
    IncompleteConstraintError,
    build_group_table,
)
from .matrix import compute_constraint_forces, fill_constraint_matrix
from .parameters import ConstraintSolverConfig
from .sparse import check_sparsity_pattern_changed, dense_to_csr

__all__ = [
    # Configuration
    "ConstraintSolverConfig",
    # Group table
    "ConstraintTableOverflowError",
    "IncompleteConstraintError",
    "build_group_table",
    # Matrix
    "fill_constraint_matrix",
    "compute_constraint_forces",
    # Sparse conversion
    "dense_to_csr",
    "check_sparsity_pattern_changed",
    # Factorization
    "SingularConstraintMatrixError",
    "SymbolicAnalysis",
    "LUFactorization",
    "analyze_sparsity",
    "reset_factor_values",
    "refactor",
    "solve",
]
