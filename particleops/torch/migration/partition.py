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

"""PyTorch bindings for particle classification and partitioning.

This module provides PyTorch custom operators for staging particles that
left the local domain, classifying particles into kept and removed sets,
and computing the stable partition permutation.
"""

from __future__ import annotations

from collections.abc import Sequence

import torch
import warp as wp

from particleops.migration.flags import (
    classify_particles as wp_classify_particles,
)
from particleops.migration.flags import (
    flag_migrating_particles as wp_flag_migrating_particles,
)
from particleops.migration.partition import (
    partition_particles as wp_partition_particles,
)
from particleops.types import get_wp_dtype, get_wp_vec4_dtype

__all__ = [
    "flag_migrating_particles",
    "classify_particles",
    "partition_particles",
]

###########################################################################################
########################### Domain Staging ################################################
###########################################################################################


@torch.library.custom_op(
    "particleops::flag_migrating_particles",
    mutates_args=("status",),
)
def _flag_migrating_particles_op(
    positions: torch.Tensor,
    box_lo: list[float],
    box_hi: list[float],
    status: torch.Tensor,
) -> None:
    """Internal custom op for setting migration direction bits.

    See Also
    --------
    particleops.migration.flags.flag_migrating_particles : Core warp launcher
    flag_migrating_particles : High-level wrapper function
    """
    num_particles = positions.shape[0]
    if num_particles == 0:
        return

    wp_dtype = get_wp_dtype(positions.dtype)
    wp_vec4_dtype = get_wp_vec4_dtype(positions.dtype)

    wp_positions = wp.from_torch(positions, dtype=wp_vec4_dtype, return_ctype=True)
    wp_status = wp.from_torch(status, dtype=wp.int32, return_ctype=True)

    wp_flag_migrating_particles(
        positions=wp_positions,
        box_lo=tuple(box_lo),
        box_hi=tuple(box_hi),
        status=wp_status,
        wp_dtype=wp_dtype,
        device=str(positions.device),
    )


def flag_migrating_particles(
    positions: torch.Tensor,
    box_lo: Sequence[float],
    box_hi: Sequence[float],
    status: torch.Tensor,
) -> None:
    """Set the migration direction bits of particles outside ``[lo, hi)``.

    Parameters
    ----------
    positions : torch.Tensor, shape (num_particles, 4)
        Packed ``(x, y, z, type)`` records, float32 or float64.
    box_lo, box_hi : sequence of float
        Corners of the orthorhombic local domain.
    status : torch.Tensor, shape (num_particles,), dtype=int32
        OUTPUT: Status words. Direction bits are OR-ed in, existing bits are
        preserved.

    Examples
    --------
    >>> positions = torch.tensor([[0.5, 0.5, 0.5, 0.0], [1.5, -0.1, 0.5, 0.0]])
    >>> status = torch.zeros(2, dtype=torch.int32)
    >>> flag_migrating_particles(positions, (0, 0, 0), (1, 1, 1), status)
    >>> status.tolist()  # EAST | SOUTH for the second particle
    [0, 9]
    """
    if positions.ndim != 2 or positions.shape[1] != 4:
        raise ValueError(
            f"positions must have shape (num_particles, 4), got {tuple(positions.shape)}"
        )
    if len(box_lo) != 3 or len(box_hi) != 3:
        raise ValueError("box_lo and box_hi must have three components")
    if status.shape[0] != positions.shape[0]:
        raise ValueError(
            f"status has {status.shape[0]} entries but there are "
            f"{positions.shape[0]} particles"
        )
    _flag_migrating_particles_op(
        positions,
        [float(x) for x in box_lo],
        [float(x) for x in box_hi],
        status,
    )


###########################################################################################
########################### Classification ################################################
###########################################################################################


@torch.library.custom_op(
    "particleops::classify_particles",
    mutates_args=("keep_flags", "remove_flags", "identity"),
)
def _classify_particles_op(
    status: torch.Tensor,
    mask: int,
    keep_flags: torch.Tensor,
    remove_flags: torch.Tensor,
    identity: torch.Tensor,
) -> None:
    """Internal custom op for the keep/remove classification.

    See Also
    --------
    particleops.migration.flags.classify_particles : Core warp launcher
    classify_particles : High-level wrapper function
    """
    if status.shape[0] == 0:
        return

    wp_classify_particles(
        status=wp.from_torch(status, dtype=wp.int32, return_ctype=True),
        mask=mask,
        keep_flags=wp.from_torch(keep_flags, dtype=wp.int32, return_ctype=True),
        remove_flags=wp.from_torch(remove_flags, dtype=wp.int32, return_ctype=True),
        identity=wp.from_torch(identity, dtype=wp.int32, return_ctype=True),
        device=str(status.device),
    )


def classify_particles(
    status: torch.Tensor,
    mask: int,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Classify particles as kept or removed from a status bitmask.

    A particle is kept when ``status & mask == 0``.

    Parameters
    ----------
    status : torch.Tensor, shape (num_particles,), dtype=int32
        Per-particle status words.
    mask : int
        Status bits that mark a particle for removal.

    Returns
    -------
    keep_flags : torch.Tensor, shape (num_particles,), dtype=int32
        1 for kept particles, 0 otherwise.
    remove_flags : torch.Tensor, shape (num_particles,), dtype=int32
        Complement of keep_flags.
    identity : torch.Tensor, shape (num_particles,), dtype=int32
        ``identity[i] = i``.

    Examples
    --------
    >>> status = torch.tensor([0, 1, 1, 0, 0], dtype=torch.int32)
    >>> keep, remove, identity = classify_particles(status, 1)
    >>> keep.tolist()
    [1, 0, 0, 1, 1]
    """
    if status.dtype != torch.int32:
        raise TypeError(f"status must be int32, got {status.dtype}")
    num_particles = status.shape[0]
    keep_flags = torch.empty(num_particles, dtype=torch.int32, device=status.device)
    remove_flags = torch.empty_like(keep_flags)
    identity = torch.empty_like(keep_flags)
    _classify_particles_op(status, int(mask), keep_flags, remove_flags, identity)
    return keep_flags, remove_flags, identity


###########################################################################################
########################### Partition #####################################################
###########################################################################################


@torch.library.custom_op(
    "particleops::partition_particles",
    mutates_args=("keep_offsets", "remove_offsets", "permutation", "num_keep"),
)
def _partition_particles_op(
    keep_flags: torch.Tensor,
    remove_flags: torch.Tensor,
    identity: torch.Tensor,
    keep_offsets: torch.Tensor,
    remove_offsets: torch.Tensor,
    permutation: torch.Tensor,
    num_keep: torch.Tensor,
) -> None:
    """Internal custom op for the stable keep/remove partition.

    See Also
    --------
    particleops.migration.partition.partition_particles : Core warp launcher
    partition_particles : High-level wrapper function
    """
    # underlying warp launcher relies on Python API for array_scan and zero_
    # so `return_ctype` is omitted
    wp_partition_particles(
        keep_flags=wp.from_torch(keep_flags, dtype=wp.int32),
        remove_flags=wp.from_torch(remove_flags, dtype=wp.int32),
        identity=wp.from_torch(identity, dtype=wp.int32, return_ctype=True),
        keep_offsets=wp.from_torch(keep_offsets, dtype=wp.int32),
        remove_offsets=wp.from_torch(remove_offsets, dtype=wp.int32),
        permutation=wp.from_torch(permutation, dtype=wp.int32, return_ctype=True),
        num_keep=wp.from_torch(num_keep, dtype=wp.int32),
        device=str(keep_flags.device),
    )


def partition_particles(
    keep_flags: torch.Tensor,
    remove_flags: torch.Tensor,
    identity: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Stable two-way partition of particle indices.

    Parameters
    ----------
    keep_flags : torch.Tensor, shape (num_particles,), dtype=int32
        1 for kept particles, 0 otherwise.
    remove_flags : torch.Tensor, shape (num_particles,), dtype=int32
        Complement of keep_flags.
    identity : torch.Tensor, shape (num_particles,), dtype=int32
        Source index of each element.

    Returns
    -------
    permutation : torch.Tensor, shape (num_particles,), dtype=int32
        Output slot -> source index. Kept sources first, removed sources
        after, both in original relative order.
    num_keep : torch.Tensor, shape (1,), dtype=int32
        Number of kept particles K.

    Examples
    --------
    >>> status = torch.tensor([0, 1, 1, 0, 0], dtype=torch.int32)
    >>> permutation, num_keep = partition_particles(*classify_particles(status, 1))
    >>> permutation.tolist(), num_keep.item()
    ([0, 3, 4, 1, 2], 3)
    """
    num_particles = keep_flags.shape[0]
    if remove_flags.shape[0] != num_particles or identity.shape[0] != num_particles:
        raise ValueError(
            "keep_flags, remove_flags and identity must have the same length"
        )
    device = keep_flags.device
    keep_offsets = torch.empty(num_particles, dtype=torch.int32, device=device)
    remove_offsets = torch.empty_like(keep_offsets)
    permutation = torch.empty_like(keep_offsets)
    num_keep = torch.zeros(1, dtype=torch.int32, device=device)
    _partition_particles_op(
        keep_flags,
        remove_flags,
        identity,
        keep_offsets,
        remove_offsets,
        permutation,
        num_keep,
    )
    return permutation, num_keep
