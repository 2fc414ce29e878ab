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

"""Configuration of the distance constraint solver.

All numerical knobs of the constraint pipeline are collected in one
dataclass so that a solver can be constructed from a single object.
"""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "ConstraintSolverConfig",
    "REORDERINGS",
]

REORDERINGS = ("rcm", "natural")


@dataclass
class ConstraintSolverConfig:
    """
    Numerical parameters of the distance constraint solver.

    Parameters
    ----------
    zero_pivot_tolerance : float, default 1e-14
        A pivot with magnitude at or below this value is treated as zero and
        the constraint matrix is reported as singular.
    pivot_threshold : float, default 1.0
        Partial pivoting threshold of the full factorization, in [0, 1].
        1.0 selects the largest entry of each column, 0.0 prefers the
        diagonal whenever it is nonzero.
    reordering : {"rcm", "natural"}, default "rcm"
        Fill-reducing symmetric reordering applied before the full
        factorization. ``"rcm"`` is reverse Cuthill-McKee.
    relative_tolerance : float or None, default 1e-3
        Relative deviation ``| |r| - d | / d`` above which a violated
        constraint is reported with a warning. ``None`` disables the check.
    max_constraints_per_particle : int, default 4
        Initial width of the constraint group table. The table is widened
        automatically when a particle takes part in more constraints.

    Examples
    --------
    >>> config = ConstraintSolverConfig(reordering="natural")
    >>> config.zero_pivot_tolerance
    1e-14
    """

    zero_pivot_tolerance: float = 1e-14
    pivot_threshold: float = 1.0
    reordering: str = "rcm"
    relative_tolerance: float | None = 1e-3
    max_constraints_per_particle: int = 4

    def __post_init__(self) -> None:
        """Validate parameter ranges."""
        if self.zero_pivot_tolerance < 0.0:
            raise ValueError(
                f"zero_pivot_tolerance must be non-negative, got {self.zero_pivot_tolerance}"
            )
        if not 0.0 <= self.pivot_threshold <= 1.0:
            raise ValueError(
                f"pivot_threshold must be in [0, 1], got {self.pivot_threshold}"
            )
        if self.reordering not in REORDERINGS:
            raise ValueError(
                f"reordering must be one of {REORDERINGS}, got {self.reordering!r}"
            )
        if self.relative_tolerance is not None and self.relative_tolerance <= 0.0:
            raise ValueError(
                f"relative_tolerance must be positive or None, got {self.relative_tolerance}"
            )
        if self.max_constraints_per_particle < 1:
            raise ValueError(
                "max_constraints_per_particle must be at least 1, "
                f"got {self.max_constraints_per_particle}"
            )
