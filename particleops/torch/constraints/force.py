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

"""Distance constraint forces for a double-buffered particle arena.

`DistanceConstraintForce` chains the constraint pipeline for one step:

1. Rebuild the constraint group table when the constraint topology or the
   particle index layout changed.
2. Assemble the constraint matrix and right-hand side.
3. Solve for the Lagrange multipliers with `SparseLUSolver`.
4. Map the multipliers back to per-particle constraint forces.
"""

from __future__ import annotations

import torch
from loguru import logger

from particleops.constraints.group_table import ConstraintTableOverflowError
from particleops.constraints.parameters import ConstraintSolverConfig
from particleops.torch.constraints.constraint_data import ConstraintData
from particleops.torch.constraints.group_table import build_group_table
from particleops.torch.constraints.matrix import (
    compute_constraint_forces,
    fill_constraint_matrix,
)
from particleops.torch.constraints.solver import SparseLUSolver
from particleops.torch.migration.particle_data import ParticleData

__all__ = ["DistanceConstraintForce"]


class DistanceConstraintForce:
    """Holonomic distance constraints solved with Lagrange multipliers.

    Parameters
    ----------
    particle_data : ParticleData
        Local particles. Positions, velocities (with masses in the 4th
        component) and the tag lookup are read through it every step.
    constraint_data : ConstraintData
        Constraint definitions and topology version.
    config : ConstraintSolverConfig, optional
        Numerical parameters. Defaults to ``ConstraintSolverConfig()``.

    Attributes
    ----------
    solver : SparseLUSolver
        Owner of the factorization handle.
    lagrange_multipliers : torch.Tensor, shape (num_constraints,), dtype=float64
        Multipliers of the last `compute` call.

    Examples
    --------
    >>> with DistanceConstraintForce(particles, constraints) as constraint_force:
    ...     forces = constraint_force.compute(net_force, dt=0.005)
    """

    def __init__(
        self,
        particle_data: ParticleData,
        constraint_data: ConstraintData,
        config: ConstraintSolverConfig | None = None,
    ):
        self.particle_data = particle_data
        self.constraint_data = constraint_data
        self.config = config if config is not None else ConstraintSolverConfig()
        self.solver = SparseLUSolver(self.config, device=particle_data.device)
        self.lagrange_multipliers = torch.zeros(
            0, dtype=torch.float64, device=particle_data.device
        )
        self._table_width = self.config.max_constraints_per_particle
        self._group_table: tuple[torch.Tensor, torch.Tensor, torch.Tensor] | None = None
        self._group_table_key: tuple[int, int] | None = None

    def __enter__(self) -> DistanceConstraintForce:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def release(self) -> None:
        """Release the factorization handle and the cached group table."""
        self.solver.release()
        self._group_table = None
        self._group_table_key = None

    @property
    def num_dof_removed(self) -> int:
        """Degrees of freedom removed by the constraints."""
        return self.constraint_data.num_dof_removed

    @property
    def group_table(self) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """``(group_table, cpos_table, num_groups)``, rebuilt when stale."""
        key = (
            self.constraint_data.topology_version,
            self.particle_data.layout_version,
        )
        if self._group_table is None or key != self._group_table_key:
            self._group_table = self._build_group_table()
            self._group_table_key = key
        return self._group_table

    def _build_group_table(self) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        particles = self.particle_data
        members = self.constraint_data.members.to(particles.device)
        logger.debug(
            "Rebuilding constraint group table for {} constraints",
            members.shape[0],
        )
        try:
            return build_group_table(
                members, particles.rtag, particles.num_particles, self._table_width
            )
        except ConstraintTableOverflowError as e:
            logger.debug(
                "Widening constraint group table from {} to {}",
                e.max_constraints_per_particle,
                e.required,
            )
            self._table_width = e.required
            return build_group_table(
                members, particles.rtag, particles.num_particles, self._table_width
            )

    def compute(
        self,
        net_force: torch.Tensor,
        dt: float,
        cell: torch.Tensor | None = None,
        pbc: torch.Tensor | None = None,
    ) -> torch.Tensor:
        """Constraint forces for the current particle state.

        Parameters
        ----------
        net_force : torch.Tensor, shape (num_particles, 3) or (num_particles, 4)
            Net non-constraint force on each local particle.
        dt : float
            Time step, must be positive.
        cell : torch.Tensor, shape (3, 3) or (1, 3, 3), optional
            Box matrix, rows are lattice vectors. Identity when omitted.
        pbc : torch.Tensor, shape (3,), dtype=bool, optional
            Periodic flags. No periodicity when omitted.

        Returns
        -------
        torch.Tensor, shape (num_particles, 4)
            Constraint forces in the working precision of the particles, the
            4th component is zero. Add them to the net force.

        Raises
        ------
        ValueError
            If ``dt`` is not positive, the shapes do not match, or there are
            constraints but no local particles.
        IncompleteConstraintError
            If a constraint member is not local.
        SingularConstraintMatrixError
            If the constraint matrix is singular.
        """
        particles = self.particle_data
        num_particles = particles.num_particles
        num_constraints = self.constraint_data.num_constraints

        if dt <= 0.0:
            raise ValueError(f"dt must be positive, got {dt}")
        if net_force.ndim != 2 or net_force.shape[0] != num_particles or (
            net_force.shape[1] not in (3, 4)
        ):
            raise ValueError(
                f"net_force must have shape ({num_particles}, 3) or "
                f"({num_particles}, 4), got {tuple(net_force.shape)}"
            )

        forces = torch.zeros(
            (num_particles, 4), dtype=particles.dtype, device=particles.device
        )
        if num_constraints == 0:
            self.lagrange_multipliers = torch.zeros(
                0, dtype=torch.float64, device=particles.device
            )
            return forces
        if num_particles == 0:
            raise ValueError(
                "Cannot compute constraint forces for an empty integration group"
            )

        net_force = net_force.to(device=particles.device, dtype=particles.dtype)
        if net_force.shape[1] == 3:
            net_force = torch.nn.functional.pad(net_force, (0, 1))

        group_table, cpos_table, num_groups = self.group_table
        members = self.constraint_data.members.to(particles.device)
        distances = self.constraint_data.distances.to(particles.device)

        matrix, rhs, violation_flag = fill_constraint_matrix(
            particles.positions,
            particles.velocities,
            net_force,
            members,
            distances,
            particles.rtag,
            group_table,
            cpos_table,
            num_groups,
            dt,
            cell=cell,
            pbc=pbc,
            relative_tolerance=self.config.relative_tolerance,
        )

        if self.config.relative_tolerance is not None:
            violated = int(violation_flag.item())
            if violated > 0:
                index = violated - 1
                logger.warning(
                    "Distance constraint {} between tags {} is violated by more "
                    "than {:g} of its target distance {:g}",
                    index,
                    members[index].tolist(),
                    self.config.relative_tolerance,
                    float(distances[index]),
                )

        lagrange = self.solver.solve(
            matrix, rhs, topology_version=self.constraint_data.topology_version
        )
        self.lagrange_multipliers = lagrange

        forces[:] = compute_constraint_forces(
            particles.positions,
            members,
            particles.rtag,
            group_table,
            cpos_table,
            num_groups,
            lagrange,
            cell=cell,
            pbc=pbc,
        )
        return forces
