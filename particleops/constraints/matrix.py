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

r"""Core warp kernels and launchers for the distance constraint system.

For constraints ``n`` with members ``(a, b)`` and target distance ``d_n``
the constraint forces are ``-2 s lambda_n r_n`` on each member, where
``r_n = minimage(pos(a) - pos(b))`` and ``s`` is +1 on "a" and -1 on "b".
The Lagrange multipliers solve the linearized system ``A lambda = b`` with

.. math::

    A_{nm} = \sum_p \frac{4 s_{n,p} s_{m,p} (q_n \cdot r_m)}{m_p}

    b_n = \frac{|q_n|^2 - d_n^2}{\Delta t^2}
        + 2 q_n \cdot \left(\frac{F_a}{m_a} - \frac{F_b}{m_b}\right)

where ``q_n = r_n + dt (v_a - v_b)`` is the predicted separation and the sum
runs over the particles ``p`` shared by constraints ``n`` and ``m``.

Both the matrix and the right-hand side are assembled in float64 regardless
of the working precision of the particle arrays. The diagonal cell of every
constraint receives one contribution from each of its members, so cells are
accumulated with atomics.

See `particleops.torch.constraints` for PyTorch bindings.
"""

from typing import Any

import warp as wp

__all__ = [
    "fill_constraint_matrix",
    "compute_constraint_forces",
]


@wp.func
def _to_vec3d(v: Any):
    """First three components of a packed record as a float64 vector."""
    return wp.vec3d(wp.float64(v[0]), wp.float64(v[1]), wp.float64(v[2]))


@wp.func
def _minimum_image(
    dr: wp.vec3d,
    cell: wp.mat33d,
    pbc: wp.array(dtype=wp.bool),
):
    """Wrap a separation vector into the nearest periodic image."""
    inverse_cell_transpose = wp.transpose(wp.inverse(cell))
    fractional = inverse_cell_transpose * dr
    for dim in range(3):
        if pbc[dim]:
            fractional[dim] = fractional[dim] - wp.round(fractional[dim])
    return wp.transpose(cell) * fractional


@wp.func
def _role_sign(cpos: wp.int32):
    """+1 for the "a" member of a constraint, -1 for the "b" member."""
    return wp.float64(1.0) - wp.float64(2.0) * wp.float64(cpos)


@wp.func
def _separation(
    n: wp.int32,
    members: wp.array(dtype=wp.vec2i),
    rtag: wp.array(dtype=wp.int32),
    positions: wp.array(dtype=Any),
    cell: wp.mat33d,
    pbc: wp.array(dtype=wp.bool),
):
    """Minimum image separation ``pos(a) - pos(b)`` of constraint ``n``."""
    tags = members[n]
    a = rtag[tags[0]]
    b = rtag[tags[1]]
    dr = _to_vec3d(positions[a]) - _to_vec3d(positions[b])
    return _minimum_image(dr, cell, pbc)


###########################################################################################
########################### Matrix Assembly ###############################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _fill_constraint_matrix(
    positions: wp.array(dtype=Any),
    velocities: wp.array(dtype=Any),
    net_force: wp.array(dtype=Any),
    members: wp.array(dtype=wp.vec2i),
    distances: wp.array(dtype=wp.float64),
    rtag: wp.array(dtype=wp.int32),
    group_table: wp.array2d(dtype=wp.vec2i),
    cpos_table: wp.array2d(dtype=wp.int32),
    num_groups: wp.array(dtype=wp.int32),
    cell: wp.array(dtype=wp.mat33d),
    pbc: wp.array(dtype=wp.bool),
    dt: wp.float64,
    num_local: wp.int32,
    relative_tolerance: wp.float64,
    matrix: wp.array2d(dtype=wp.float64),
    rhs: wp.array(dtype=wp.float64),
    violation_flag: wp.array(dtype=wp.int32),
) -> None:
    """Accumulate the constraint matrix and right-hand side.

    Parameters
    ----------
    positions : wp.array, shape (num_particles,), dtype=wp.vec4*
        Packed ``(x, y, z, type)`` records.
    velocities : wp.array, shape (num_particles,), dtype=wp.vec4*
        Packed ``(vx, vy, vz, mass)`` records.
    net_force : wp.array, shape (num_particles,), dtype=wp.vec4*
        Net non-constraint force on each particle (4th component unused).
    members : wp.array, shape (num_constraints,), dtype=wp.vec2i
        Tags of the members of each constraint.
    distances : wp.array, shape (num_constraints,), dtype=wp.float64
        Target distance of each constraint.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        Tag -> local index lookup.
    group_table, cpos_table, num_groups : wp.array2d, wp.array2d, wp.array
        Constraint group table from `build_group_table`.
    cell : wp.array, shape (1,), dtype=wp.mat33d
        Box matrix, rows are lattice vectors.
    pbc : wp.array, shape (3,), dtype=wp.bool
        Periodic flags per dimension.
    dt : wp.float64
        Time step.
    num_local : wp.int32
        Number of local particles.
    relative_tolerance : wp.float64
        Violation reporting threshold, values <= 0 disable reporting.
    matrix : wp.array2d, shape (num_constraints, num_constraints), dtype=wp.float64
        OUTPUT: Constraint matrix. Must be zeroed.
    rhs : wp.array, shape (num_constraints,), dtype=wp.float64
        OUTPUT: Right-hand side, written once per constraint.
    violation_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Largest ``constraint index + 1`` whose relative violation
        exceeds relative_tolerance. Must be zeroed.

    Notes
    -----
    - Thread launch: One thread per local particle (dim=num_particles)
    - Matrix cells are shared between threads and accumulated atomically
    """
    p = wp.tid()

    count = wp.min(num_groups[p], group_table.shape[1])
    if count == 0:
        return

    box = cell[0]
    inv_mass = wp.float64(1.0) / wp.float64(velocities[p][3])
    inv_dt2 = wp.float64(1.0) / (dt * dt)

    for i in range(count):
        entry = group_table[p, i]
        n = entry[1]
        cpos = cpos_table[p, i]
        s_n = _role_sign(cpos)

        tags = members[n]
        a = rtag[tags[0]]
        b = rtag[tags[1]]

        r_n = _separation(n, members, rtag, positions, box, pbc)
        rdot_n = _to_vec3d(velocities[a]) - _to_vec3d(velocities[b])
        q_n = r_n + dt * rdot_n

        for j in range(count):
            m = group_table[p, j][1]
            s_m = _role_sign(cpos_table[p, j])
            r_m = _separation(m, members, rtag, positions, box, pbc)
            value = wp.float64(4.0) * s_n * s_m * wp.dot(q_n, r_m) * inv_mass
            wp.atomic_add(matrix, n, m, value)

        if cpos == 0 or entry[0] >= num_local:
            d = distances[n]
            inv_mass_a = wp.float64(1.0) / wp.float64(velocities[a][3])
            inv_mass_b = wp.float64(1.0) / wp.float64(velocities[b][3])
            accel = (
                _to_vec3d(net_force[a]) * inv_mass_a
                - _to_vec3d(net_force[b]) * inv_mass_b
            )
            rhs[n] = (wp.dot(q_n, q_n) - d * d) * inv_dt2 + wp.float64(
                2.0
            ) * wp.dot(q_n, accel)

            if relative_tolerance > wp.float64(0.0):
                deviation = wp.abs(wp.length(r_n) - d) / d
                if deviation > relative_tolerance:
                    wp.atomic_max(violation_flag, 0, n + 1)


###########################################################################################
########################### Force Writeback ###############################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _compute_constraint_forces(
    positions: wp.array(dtype=Any),
    members: wp.array(dtype=wp.vec2i),
    rtag: wp.array(dtype=wp.int32),
    group_table: wp.array2d(dtype=wp.vec2i),
    cpos_table: wp.array2d(dtype=wp.int32),
    num_groups: wp.array(dtype=wp.int32),
    cell: wp.array(dtype=wp.mat33d),
    pbc: wp.array(dtype=wp.bool),
    lagrange: wp.array(dtype=wp.float64),
    forces: wp.array(dtype=wp.vec4d),
) -> None:
    """Map Lagrange multipliers to per-particle constraint forces.

    Parameters
    ----------
    positions : wp.array, shape (num_particles,), dtype=wp.vec4*
        Packed ``(x, y, z, type)`` records.
    members : wp.array, shape (num_constraints,), dtype=wp.vec2i
        Tags of the members of each constraint.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        Tag -> local index lookup.
    group_table, cpos_table, num_groups : wp.array2d, wp.array2d, wp.array
        Constraint group table from `build_group_table`.
    cell : wp.array, shape (1,), dtype=wp.mat33d
        Box matrix, rows are lattice vectors.
    pbc : wp.array, shape (3,), dtype=wp.bool
        Periodic flags per dimension.
    lagrange : wp.array, shape (num_constraints,), dtype=wp.float64
        Solved Lagrange multipliers.
    forces : wp.array, shape (num_particles,), dtype=wp.vec4d
        OUTPUT: Constraint force on each particle, 4th component zero.

    Notes
    -----
    - Thread launch: One thread per local particle (dim=num_particles)
    - Each particle writes only its own force, no atomics needed
    """
    p = wp.tid()

    box = cell[0]
    count = wp.min(num_groups[p], group_table.shape[1])

    force = wp.vec3d(wp.float64(0.0), wp.float64(0.0), wp.float64(0.0))
    for i in range(count):
        n = group_table[p, i][1]
        s_n = _role_sign(cpos_table[p, i])
        r_n = _separation(n, members, rtag, positions, box, pbc)
        force = force - wp.float64(2.0) * s_n * lagrange[n] * r_n

    forces[p] = wp.vec4d(force[0], force[1], force[2], wp.float64(0.0))


_T = [wp.float32, wp.float64]
_V4 = [wp.vec4f, wp.vec4d]
_fill_constraint_matrix_overload = {}
_compute_constraint_forces_overload = {}
for t, v in zip(_T, _V4):
    _fill_constraint_matrix_overload[t] = wp.overload(
        _fill_constraint_matrix,
        [
            wp.array(dtype=v),
            wp.array(dtype=v),
            wp.array(dtype=v),
            wp.array(dtype=wp.vec2i),
            wp.array(dtype=wp.float64),
            wp.array(dtype=wp.int32),
            wp.array2d(dtype=wp.vec2i),
            wp.array2d(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.mat33d),
            wp.array(dtype=wp.bool),
            wp.float64,
            wp.int32,
            wp.float64,
            wp.array2d(dtype=wp.float64),
            wp.array(dtype=wp.float64),
            wp.array(dtype=wp.int32),
        ],
    )
    _compute_constraint_forces_overload[t] = wp.overload(
        _compute_constraint_forces,
        [
            wp.array(dtype=v),
            wp.array(dtype=wp.vec2i),
            wp.array(dtype=wp.int32),
            wp.array2d(dtype=wp.vec2i),
            wp.array2d(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.mat33d),
            wp.array(dtype=wp.bool),
            wp.array(dtype=wp.float64),
            wp.array(dtype=wp.vec4d),
        ],
    )


###########################################################################################
########################### Warp Launchers ###############################################
###########################################################################################


def fill_constraint_matrix(
    positions: wp.array,
    velocities: wp.array,
    net_force: wp.array,
    members: wp.array,
    distances: wp.array,
    rtag: wp.array,
    group_table: wp.array,
    cpos_table: wp.array,
    num_groups: wp.array,
    cell: wp.array,
    pbc: wp.array,
    dt: float,
    relative_tolerance: float,
    matrix: wp.array,
    rhs: wp.array,
    violation_flag: wp.array,
    wp_dtype: type,
    device: str,
) -> None:
    """Core warp launcher for assembling the constraint system.

    Parameters
    ----------
    positions, velocities, net_force : wp.array, shape (num_particles,), dtype=wp.vec4*
        Packed particle records and net non-constraint forces.
    members : wp.array, shape (num_constraints,), dtype=wp.vec2i
        Tags of the members of each constraint.
    distances : wp.array, shape (num_constraints,), dtype=wp.float64
        Target distances.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        Tag -> local index lookup.
    group_table, cpos_table, num_groups : wp.array2d, wp.array2d, wp.array
        Constraint group table.
    cell : wp.array, shape (1,), dtype=wp.mat33d
        Box matrix.
    pbc : wp.array, shape (3,), dtype=wp.bool
        Periodic flags.
    dt : float
        Time step, must be positive.
    relative_tolerance : float
        Violation reporting threshold, 0 disables reporting.
    matrix : wp.array2d, shape (num_constraints, num_constraints), dtype=wp.float64
        OUTPUT: Constraint matrix, must be zeroed by the caller.
    rhs : wp.array, shape (num_constraints,), dtype=wp.float64
        OUTPUT: Right-hand side.
    violation_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Violated constraint index + 1, must be zeroed by the caller.
    wp_dtype : type
        Warp dtype of the particle records (wp.float32 or wp.float64).
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    num_particles = positions.shape[0]
    if num_particles == 0 or members.shape[0] == 0:
        return

    wp.launch(
        kernel=_fill_constraint_matrix_overload[wp_dtype],
        dim=num_particles,
        inputs=[
            positions,
            velocities,
            net_force,
            members,
            distances,
            rtag,
            group_table,
            cpos_table,
            num_groups,
            cell,
            pbc,
            wp.float64(dt),
            wp.int32(num_particles),
            wp.float64(relative_tolerance),
            matrix,
            rhs,
            violation_flag,
        ],
        device=device,
    )


def compute_constraint_forces(
    positions: wp.array,
    members: wp.array,
    rtag: wp.array,
    group_table: wp.array,
    cpos_table: wp.array,
    num_groups: wp.array,
    cell: wp.array,
    pbc: wp.array,
    lagrange: wp.array,
    forces: wp.array,
    wp_dtype: type,
    device: str,
) -> None:
    """Core warp launcher for the constraint force writeback.

    Parameters
    ----------
    positions : wp.array, shape (num_particles,), dtype=wp.vec4*
        Packed particle positions.
    members, rtag, group_table, cpos_table, num_groups, cell, pbc
        As for `fill_constraint_matrix`.
    lagrange : wp.array, shape (num_constraints,), dtype=wp.float64
        Lagrange multipliers.
    forces : wp.array, shape (num_particles,), dtype=wp.vec4d
        OUTPUT: Constraint forces. Every entry is overwritten.
    wp_dtype : type
        Warp dtype of the particle records.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    num_particles = positions.shape[0]
    if num_particles == 0:
        return

    wp.launch(
        kernel=_compute_constraint_forces_overload[wp_dtype],
        dim=num_particles,
        inputs=[
            positions,
            members,
            rtag,
            group_table,
            cpos_table,
            num_groups,
            cell,
            pbc,
            lagrange,
            forces,
        ],
        device=device,
    )
