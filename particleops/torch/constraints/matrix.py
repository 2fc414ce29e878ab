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

"""PyTorch bindings for the constraint matrix and force writeback.

This module provides PyTorch custom operators that assemble the dense
constraint matrix and right-hand side from the current particle state, and
that map Lagrange multipliers back to per-particle constraint forces.
"""

from __future__ import annotations

import torch
import warp as wp

from particleops.constraints.matrix import (
    compute_constraint_forces as wp_compute_constraint_forces,
)
from particleops.constraints.matrix import (
    fill_constraint_matrix as wp_fill_constraint_matrix,
)
from particleops.types import get_wp_dtype, get_wp_mat_dtype, get_wp_vec4_dtype

__all__ = [
    "fill_constraint_matrix",
    "compute_constraint_forces",
]


def _prepare_box(
    cell: torch.Tensor | None,
    pbc: torch.Tensor | None,
    device: torch.device,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Float64 (1, 3, 3) cell and (3,) bool pbc, defaults for open boundaries."""
    if cell is None:
        cell = torch.eye(3, dtype=torch.float64, device=device)
    if pbc is None:
        pbc = torch.zeros(3, dtype=torch.bool, device=device)
    cell = cell.to(device=device, dtype=torch.float64).reshape(1, 3, 3).contiguous()
    pbc = pbc.to(device=device, dtype=torch.bool).reshape(3).contiguous()
    return cell, pbc


@torch.library.custom_op(
    "particleops::fill_constraint_matrix",
    mutates_args=("matrix", "rhs", "violation_flag"),
)
def _fill_constraint_matrix_op(
    positions: torch.Tensor,
    velocities: torch.Tensor,
    net_force: torch.Tensor,
    members: torch.Tensor,
    distances: torch.Tensor,
    rtag: torch.Tensor,
    group_table: torch.Tensor,
    cpos_table: torch.Tensor,
    num_groups: torch.Tensor,
    cell: torch.Tensor,
    pbc: torch.Tensor,
    dt: float,
    relative_tolerance: float,
    matrix: torch.Tensor,
    rhs: torch.Tensor,
    violation_flag: torch.Tensor,
) -> None:
    """Internal custom op for assembling the constraint system.

    See Also
    --------
    particleops.constraints.matrix.fill_constraint_matrix : Core warp launcher
    fill_constraint_matrix : High-level wrapper function
    """
    matrix.zero_()
    rhs.zero_()
    violation_flag.zero_()

    if positions.shape[0] == 0 or members.shape[0] == 0:
        return

    vec4 = get_wp_vec4_dtype(positions.dtype)

    wp_fill_constraint_matrix(
        positions=wp.from_torch(positions, dtype=vec4),
        velocities=wp.from_torch(velocities, dtype=vec4, return_ctype=True),
        net_force=wp.from_torch(net_force, dtype=vec4, return_ctype=True),
        members=wp.from_torch(members, dtype=wp.vec2i),
        distances=wp.from_torch(distances, dtype=wp.float64, return_ctype=True),
        rtag=wp.from_torch(rtag, dtype=wp.int32, return_ctype=True),
        group_table=wp.from_torch(group_table, dtype=wp.vec2i, return_ctype=True),
        cpos_table=wp.from_torch(cpos_table, dtype=wp.int32, return_ctype=True),
        num_groups=wp.from_torch(num_groups, dtype=wp.int32, return_ctype=True),
        cell=wp.from_torch(
            cell, dtype=get_wp_mat_dtype(cell.dtype), return_ctype=True
        ),
        pbc=wp.from_torch(pbc, dtype=wp.bool, return_ctype=True),
        dt=dt,
        relative_tolerance=relative_tolerance,
        matrix=wp.from_torch(matrix, dtype=wp.float64, return_ctype=True),
        rhs=wp.from_torch(rhs, dtype=wp.float64, return_ctype=True),
        violation_flag=wp.from_torch(violation_flag, dtype=wp.int32, return_ctype=True),
        wp_dtype=get_wp_dtype(positions.dtype),
        device=str(positions.device),
    )


def fill_constraint_matrix(
    positions: torch.Tensor,
    velocities: torch.Tensor,
    net_force: torch.Tensor,
    members: torch.Tensor,
    distances: torch.Tensor,
    rtag: torch.Tensor,
    group_table: torch.Tensor,
    cpos_table: torch.Tensor,
    num_groups: torch.Tensor,
    dt: float,
    cell: torch.Tensor | None = None,
    pbc: torch.Tensor | None = None,
    relative_tolerance: float | None = None,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Assemble the constraint matrix and right-hand side.

    Parameters
    ----------
    positions : torch.Tensor, shape (num_particles, 4)
        ``(x, y, z, type)`` per particle.
    velocities : torch.Tensor, shape (num_particles, 4)
        ``(vx, vy, vz, mass)`` per particle. Masses must be positive.
    net_force : torch.Tensor, shape (num_particles, 4)
        Net non-constraint force per particle, same dtype as positions.
    members : torch.Tensor, shape (num_constraints, 2), dtype=int32
        Member tags.
    distances : torch.Tensor, shape (num_constraints,), dtype=float64
        Target distances.
    rtag : torch.Tensor, shape (num_global,), dtype=int32
        Tag -> local index lookup.
    group_table, cpos_table, num_groups : torch.Tensor
        Constraint group table from `build_group_table`.
    dt : float
        Time step, must be positive.
    cell : torch.Tensor, shape (3, 3) or (1, 3, 3), optional
        Box matrix, rows are lattice vectors. Identity when omitted.
    pbc : torch.Tensor, shape (3,), dtype=bool, optional
        Periodic flags. No periodicity when omitted.
    relative_tolerance : float, optional
        Threshold on ``| |r| - d | / d`` for violation reporting.

    Returns
    -------
    matrix : torch.Tensor, shape (num_constraints, num_constraints), dtype=float64
        Constraint matrix.
    rhs : torch.Tensor, shape (num_constraints,), dtype=float64
        Right-hand side.
    violation_flag : torch.Tensor, shape (1,), dtype=int32
        Index + 1 of a violated constraint, 0 when none is violated or
        reporting is disabled.
    """
    if dt <= 0.0:
        raise ValueError(f"dt must be positive, got {dt}")
    num_particles = positions.shape[0]
    for name, tensor in (("velocities", velocities), ("net_force", net_force)):
        if tensor.shape != (num_particles, 4):
            raise ValueError(
                f"{name} must have shape ({num_particles}, 4), got {tuple(tensor.shape)}"
            )
        if tensor.dtype != positions.dtype:
            raise TypeError(f"{name} must have dtype {positions.dtype}")

    device = positions.device
    num_constraints = members.shape[0]
    cell, pbc = _prepare_box(cell, pbc, device)

    matrix = torch.zeros(
        (num_constraints, num_constraints), dtype=torch.float64, device=device
    )
    rhs = torch.zeros(num_constraints, dtype=torch.float64, device=device)
    violation_flag = torch.zeros(1, dtype=torch.int32, device=device)

    _fill_constraint_matrix_op(
        positions.contiguous(),
        velocities.contiguous(),
        net_force.contiguous(),
        members.to(torch.int32).contiguous(),
        distances.to(torch.float64).contiguous(),
        rtag,
        group_table,
        cpos_table,
        num_groups,
        cell,
        pbc,
        float(dt),
        float(relative_tolerance) if relative_tolerance is not None else 0.0,
        matrix,
        rhs,
        violation_flag,
    )
    return matrix, rhs, violation_flag


@torch.library.custom_op(
    "particleops::compute_constraint_forces",
    mutates_args=("forces",),
)
def _compute_constraint_forces_op(
    positions: torch.Tensor,
    members: torch.Tensor,
    rtag: torch.Tensor,
    group_table: torch.Tensor,
    cpos_table: torch.Tensor,
    num_groups: torch.Tensor,
    cell: torch.Tensor,
    pbc: torch.Tensor,
    lagrange: torch.Tensor,
    forces: torch.Tensor,
) -> None:
    """Internal custom op for the constraint force writeback.

    See Also
    --------
    particleops.constraints.matrix.compute_constraint_forces : Core warp launcher
    compute_constraint_forces : High-level wrapper function
    """
    if positions.shape[0] == 0:
        return

    vec4 = get_wp_vec4_dtype(positions.dtype)

    wp_compute_constraint_forces(
        positions=wp.from_torch(positions, dtype=vec4),
        members=wp.from_torch(members, dtype=wp.vec2i, return_ctype=True),
        rtag=wp.from_torch(rtag, dtype=wp.int32, return_ctype=True),
        group_table=wp.from_torch(group_table, dtype=wp.vec2i, return_ctype=True),
        cpos_table=wp.from_torch(cpos_table, dtype=wp.int32, return_ctype=True),
        num_groups=wp.from_torch(num_groups, dtype=wp.int32, return_ctype=True),
        cell=wp.from_torch(
            cell, dtype=get_wp_mat_dtype(cell.dtype), return_ctype=True
        ),
        pbc=wp.from_torch(pbc, dtype=wp.bool, return_ctype=True),
        lagrange=wp.from_torch(lagrange, dtype=wp.float64, return_ctype=True),
        forces=wp.from_torch(forces, dtype=wp.vec4d, return_ctype=True),
        wp_dtype=get_wp_dtype(positions.dtype),
        device=str(positions.device),
    )


def compute_constraint_forces(
    positions: torch.Tensor,
    members: torch.Tensor,
    rtag: torch.Tensor,
    group_table: torch.Tensor,
    cpos_table: torch.Tensor,
    num_groups: torch.Tensor,
    lagrange: torch.Tensor,
    cell: torch.Tensor | None = None,
    pbc: torch.Tensor | None = None,
) -> torch.Tensor:
    """Map Lagrange multipliers to per-particle constraint forces.

    ``force[p] = sum_n -2 s lambda_n r_n`` over the constraints of ``p``,
    with ``s = +1`` when ``p`` is member "a" and ``-1`` when it is "b".

    Parameters
    ----------
    positions : torch.Tensor, shape (num_particles, 4)
        ``(x, y, z, type)`` per particle.
    members, rtag, group_table, cpos_table, num_groups : torch.Tensor
        As for `fill_constraint_matrix`.
    lagrange : torch.Tensor, shape (num_constraints,), dtype=float64
        Lagrange multipliers.
    cell, pbc : torch.Tensor, optional
        Box matrix and periodic flags.

    Returns
    -------
    torch.Tensor, shape (num_particles, 4), dtype=float64
        Constraint forces with a zero 4th component.
    """
    device = positions.device
    cell, pbc = _prepare_box(cell, pbc, device)
    forces = torch.zeros((positions.shape[0], 4), dtype=torch.float64, device=device)
    _compute_constraint_forces_op(
        positions.contiguous(),
        members.to(torch.int32).contiguous(),
        rtag,
        group_table,
        cpos_table,
        num_groups,
        cell,
        pbc,
        lagrange.to(torch.float64).contiguous(),
        forces,
    )
    return forces
