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

"""PyTorch bindings for the constraint group table."""

from __future__ import annotations

import torch
import warp as wp

from particleops.constraints.group_table import (
    ConstraintTableOverflowError,
    IncompleteConstraintError,
)
from particleops.constraints.group_table import (
    build_group_table as wp_build_group_table,
)

__all__ = ["build_group_table"]


@torch.library.custom_op(
    "particleops::build_group_table",
    mutates_args=(
        "group_table",
        "cpos_table",
        "num_groups",
        "overflow_flag",
        "incomplete_flag",
    ),
)
def _build_group_table_op(
    members: torch.Tensor,
    rtag: torch.Tensor,
    group_table: torch.Tensor,
    cpos_table: torch.Tensor,
    num_groups: torch.Tensor,
    overflow_flag: torch.Tensor,
    incomplete_flag: torch.Tensor,
) -> None:
    """Internal custom op for building the constraint group table.

    See Also
    --------
    particleops.constraints.group_table.build_group_table : Core warp launcher
    build_group_table : High-level wrapper function
    """
    num_groups.zero_()
    overflow_flag.zero_()
    incomplete_flag.zero_()

    if members.shape[0] == 0:
        return

    wp_build_group_table(
        members=wp.from_torch(members, dtype=wp.vec2i),
        rtag=wp.from_torch(rtag, dtype=wp.int32, return_ctype=True),
        group_table=wp.from_torch(group_table, dtype=wp.vec2i, return_ctype=True),
        cpos_table=wp.from_torch(cpos_table, dtype=wp.int32, return_ctype=True),
        num_groups=wp.from_torch(num_groups, dtype=wp.int32, return_ctype=True),
        overflow_flag=wp.from_torch(overflow_flag, dtype=wp.int32, return_ctype=True),
        incomplete_flag=wp.from_torch(
            incomplete_flag, dtype=wp.int32, return_ctype=True
        ),
        device=str(members.device),
    )


def build_group_table(
    members: torch.Tensor,
    rtag: torch.Tensor,
    num_particles: int,
    max_constraints_per_particle: int,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Build the per-particle constraint adjacency table.

    Parameters
    ----------
    members : torch.Tensor, shape (num_constraints, 2), dtype=int32
        Tags of the "a" and "b" member of each constraint.
    rtag : torch.Tensor, shape (num_global,), dtype=int32
        Tag -> local index lookup.
    num_particles : int
        Number of local particles (rows of the table).
    max_constraints_per_particle : int
        Width of the table.

    Returns
    -------
    group_table : torch.Tensor, shape (num_particles, width, 2), dtype=int32
        ``(partner index, constraint index)`` per slot.
    cpos_table : torch.Tensor, shape (num_particles, width), dtype=int32
        Role of the row particle per slot, 0 for "a" and 1 for "b".
    num_groups : torch.Tensor, shape (num_particles,), dtype=int32
        Number of constraints of each particle.

    Raises
    ------
    IncompleteConstraintError
        If a member of some constraint is not a local particle.
    ConstraintTableOverflowError
        If a particle takes part in more than ``max_constraints_per_particle``
        constraints. ``required`` holds the width that would fit.
    """
    if members.ndim != 2 or members.shape[1] != 2:
        raise ValueError(
            f"members must have shape (num_constraints, 2), got {tuple(members.shape)}"
        )
    if max_constraints_per_particle < 1:
        raise ValueError(
            "max_constraints_per_particle must be at least 1, "
            f"got {max_constraints_per_particle}"
        )
    if members.shape[0] > 0 and (
        int(members.min()) < 0 or int(members.max()) >= rtag.shape[0]
    ):
        raise ValueError(f"Constraint member tags must be in [0, {rtag.shape[0]})")

    device = members.device
    width = max_constraints_per_particle
    group_table = torch.zeros(
        (num_particles, width, 2), dtype=torch.int32, device=device
    )
    cpos_table = torch.zeros((num_particles, width), dtype=torch.int32, device=device)
    num_groups = torch.zeros(num_particles, dtype=torch.int32, device=device)
    overflow_flag = torch.zeros(1, dtype=torch.int32, device=device)
    incomplete_flag = torch.zeros(1, dtype=torch.int32, device=device)

    members = members.to(torch.int32).contiguous()
    _build_group_table_op(
        members,
        rtag,
        group_table,
        cpos_table,
        num_groups,
        overflow_flag,
        incomplete_flag,
    )

    incomplete = int(incomplete_flag.item())
    if incomplete > 0:
        index = incomplete - 1
        tag_a, tag_b = (int(t) for t in members[index].tolist())
        missing = tag_a if int(rtag[tag_a]) < 0 else tag_b
        raise IncompleteConstraintError(index, missing)

    required = int(overflow_flag.item())
    if required > 0:
        raise ConstraintTableOverflowError(width, required)

    return group_table, cpos_table, num_groups
