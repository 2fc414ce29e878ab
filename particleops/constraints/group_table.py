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

"""Core warp kernels and launchers for the constraint group table.

The group table is the per-particle adjacency list of the constraint graph:
row ``p`` lists, for every constraint particle ``p`` takes part in, the local
index of the partner particle, the constraint index and the role of ``p``
(0 when ``p`` is the first member "a", 1 when it is the second member "b").
Rows are filled with atomic slot claims, one thread per constraint.
See `particleops.torch.constraints` for PyTorch bindings.
"""

import warp as wp

from particleops.migration.flags import NOT_LOCAL


class ConstraintTableOverflowError(Exception):
    """Exception raised when a particle takes part in too many constraints.

    Parameters
    ----------
    max_constraints_per_particle : int
        Width of the group table.
    required : int
        Number of constraints of the busiest particle.
    """

    def __init__(self, max_constraints_per_particle: int, required: int):
        super().__init__(
            f"The number of constraints per particle is larger than the maximum "
            f"allowed: {required} > {max_constraints_per_particle}."
        )
        self.max_constraints_per_particle = max_constraints_per_particle
        self.required = required


class IncompleteConstraintError(Exception):
    """Exception raised when a constraint member is not a local particle.

    Parameters
    ----------
    constraint_index : int
        Index of the offending constraint.
    tag : int
        Tag of the member without a local index.
    """

    def __init__(self, constraint_index: int, tag: int):
        super().__init__(
            f"Incomplete distance constraint {constraint_index}: "
            f"particle with tag {tag} is not local."
        )
        self.constraint_index = constraint_index
        self.tag = tag


__all__ = [
    "ConstraintTableOverflowError",
    "IncompleteConstraintError",
    "build_group_table",
]


@wp.func
def _claim_slot(
    p: wp.int32,
    partner: wp.int32,
    n: wp.int32,
    role: wp.int32,
    group_table: wp.array2d(dtype=wp.vec2i),
    cpos_table: wp.array2d(dtype=wp.int32),
    num_groups: wp.array(dtype=wp.int32),
    overflow_flag: wp.array(dtype=wp.int32),
):
    """Append ``(partner, n)`` with role ``role`` to row ``p``.

    Slots past the table width are counted but not stored; the largest
    required width is recorded in ``overflow_flag``.
    """
    slot = wp.atomic_add(num_groups, p, 1)
    if slot < group_table.shape[1]:
        group_table[p, slot] = wp.vec2i(partner, n)
        cpos_table[p, slot] = role
    else:
        wp.atomic_max(overflow_flag, 0, slot + 1)


@wp.kernel(enable_backward=False)
def _build_group_table(
    members: wp.array(dtype=wp.vec2i),
    rtag: wp.array(dtype=wp.int32),
    group_table: wp.array2d(dtype=wp.vec2i),
    cpos_table: wp.array2d(dtype=wp.int32),
    num_groups: wp.array(dtype=wp.int32),
    overflow_flag: wp.array(dtype=wp.int32),
    incomplete_flag: wp.array(dtype=wp.int32),
) -> None:
    """Insert every constraint into the rows of both of its members.

    Parameters
    ----------
    members : wp.array, shape (num_constraints,), dtype=wp.vec2i
        Tags of the "a" and "b" member of each constraint.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        Tag -> local index lookup, -1 when not local.
    group_table : wp.array2d, shape (num_particles, width), dtype=wp.vec2i
        OUTPUT: ``(partner index, constraint index)`` per slot.
    cpos_table : wp.array2d, shape (num_particles, width), dtype=wp.int32
        OUTPUT: Role of the row particle in the constraint (0 = a, 1 = b).
    num_groups : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: Number of constraints per particle. Must be zeroed.
    overflow_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Largest row length when it exceeds the width, else 0.
        Must be zeroed.
    incomplete_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: ``constraint index + 1`` of a constraint with a non-local
        member, else 0. Must be zeroed.

    Notes
    -----
    - Thread launch: One thread per constraint (dim=num_constraints)
    - Slot order within a row is not deterministic
    """
    n = wp.tid()
    tags = members[n]

    a = rtag[tags[0]]
    b = rtag[tags[1]]

    if a == NOT_LOCAL or b == NOT_LOCAL:
        wp.atomic_max(incomplete_flag, 0, n + 1)
        return

    _claim_slot(a, b, n, 0, group_table, cpos_table, num_groups, overflow_flag)
    _claim_slot(b, a, n, 1, group_table, cpos_table, num_groups, overflow_flag)


###########################################################################################
########################### Warp Launchers ###############################################
###########################################################################################


def build_group_table(
    members: wp.array,
    rtag: wp.array,
    group_table: wp.array,
    cpos_table: wp.array,
    num_groups: wp.array,
    overflow_flag: wp.array,
    incomplete_flag: wp.array,
    device: str,
) -> None:
    """Core warp launcher for building the constraint group table.

    Parameters
    ----------
    members : wp.array, shape (num_constraints,), dtype=wp.vec2i
        Tags of the two members of each constraint.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        Tag -> local index lookup.
    group_table : wp.array2d, shape (num_particles, width), dtype=wp.vec2i
        OUTPUT: Partner index and constraint index per slot.
    cpos_table : wp.array2d, shape (num_particles, width), dtype=wp.int32
        OUTPUT: Role of the row particle per slot.
    num_groups : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: Constraints per particle.
    overflow_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Required width when the table overflowed, else 0.
    incomplete_flag : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: First-found incomplete constraint index + 1, else 0.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').

    Notes
    -----
    - num_groups, overflow_flag and incomplete_flag must be zeroed by the
      caller before the launch.
    - Rows are only valid when both flags are 0 afterwards.
    """
    num_constraints = members.shape[0]
    if num_constraints == 0:
        return

    wp.launch(
        kernel=_build_group_table,
        dim=num_constraints,
        inputs=[
            members,
            rtag,
            group_table,
            cpos_table,
            num_groups,
            overflow_flag,
            incomplete_flag,
        ],
        device=device,
    )
