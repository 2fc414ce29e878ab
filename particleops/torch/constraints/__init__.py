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

"""
PyTorch Bindings for Distance Constraints
=========================================

Custom operators for the constraint group table, matrix assembly, dense to
CSR conversion and force writeback, plus the stateful `ConstraintData`,
`SparseLUSolver` and `DistanceConstraintForce`.
"""

from .constraint_data import ConstraintData
from .force import DistanceConstraintForce
from .group_table import build_group_table
from .matrix import compute_constraint_forces, fill_constraint_matrix
from .solver import FactorizationState, SolverStats, SparseLUSolver, dense_to_csr

__all__ = [
    "ConstraintData",
    "build_group_table",
    "fill_constraint_matrix",
    "compute_constraint_forces",
    "dense_to_csr",
    "FactorizationState",
    "SolverStats",
    "SparseLUSolver",
    "DistanceConstraintForce",
]
