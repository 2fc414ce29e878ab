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

"""Core warp kernels and launchers for particle migration flags.

Every local particle carries a status word whose bits mark pending migration
events, one bit per direction a particle can leave the local domain through.
This module provides the kernel that classifies particles into "keep" and
"remove" sets from a bitmask, and the staging kernel that sets the direction
bits for particles that left an orthorhombic domain.
See `particleops.torch.migration` for PyTorch bindings.
"""

import enum
from typing import Any

import warp as wp

__all__ = [
    "MigrationFlag",
    "NOT_LOCAL",
    "classify_particles",
    "flag_migrating_particles",
]

# Reverse lookup value for tags that have no local index
NOT_LOCAL = wp.constant(-1)


class MigrationFlag(enum.IntFlag):
    """Status word bits, one per direction a particle can migrate in."""

    EAST = 1
    WEST = 2
    NORTH = 4
    SOUTH = 8
    UP = 16
    DOWN = 32
    ALL = 63


###########################################################################################
########################### Keep / Remove Classification ##################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _classify_particles(
    status: wp.array(dtype=wp.int32),
    mask: wp.int32,
    keep_flags: wp.array(dtype=wp.int32),
    remove_flags: wp.array(dtype=wp.int32),
    identity: wp.array(dtype=wp.int32),
) -> None:
    """Tag each particle as kept or removed from a bitmask test.

    Parameters
    ----------
    status : wp.array, shape (num_particles,), dtype=wp.int32
        Per-particle status word.
    mask : wp.int32
        Bits that mark a particle for removal.
    keep_flags : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: 1 where ``status & mask == 0``, else 0.
    remove_flags : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: Complement of keep_flags.
    identity : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: Identity index array consumed by the partitioner.

    Notes
    -----
    - Thread launch: One thread per particle (dim=num_particles)
    - Modifies: keep_flags, remove_flags, identity
    """
    i = wp.tid()

    if (status[i] & mask) == 0:
        keep_flags[i] = 1
        remove_flags[i] = 0
    else:
        keep_flags[i] = 0
        remove_flags[i] = 1

    identity[i] = i


###########################################################################################
########################### Domain Staging ################################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _flag_migrating_particles(
    positions: wp.array(dtype=Any),
    box_lo: wp.vec3d,
    box_hi: wp.vec3d,
    status: wp.array(dtype=wp.int32),
) -> None:
    """Set direction bits for particles outside the local domain.

    Parameters
    ----------
    positions : wp.array, shape (num_particles,), dtype=wp.vec4*
        Packed particle positions ``(x, y, z, type)``.
    box_lo : wp.vec3d
        Lower corner of the local domain (inclusive).
    box_hi : wp.vec3d
        Upper corner of the local domain (exclusive).
    status : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: Status words, direction bits are OR-ed in.

    Notes
    -----
    - Thread launch: One thread per particle (dim=num_particles)
    - Modifies: status (bits are only ever set, never cleared)
    """
    i = wp.tid()
    p = positions[i]

    x = wp.float64(p[0])
    y = wp.float64(p[1])
    z = wp.float64(p[2])

    flags = wp.int32(0)
    if x >= box_hi[0]:
        flags = flags | 1
    elif x < box_lo[0]:
        flags = flags | 2
    if y >= box_hi[1]:
        flags = flags | 4
    elif y < box_lo[1]:
        flags = flags | 8
    if z >= box_hi[2]:
        flags = flags | 16
    elif z < box_lo[2]:
        flags = flags | 32

    if flags != 0:
        status[i] = status[i] | flags


_T = [wp.float32, wp.float64]
_V4 = [wp.vec4f, wp.vec4d]
_flag_migrating_particles_overload = {}
for t, v in zip(_T, _V4):
    _flag_migrating_particles_overload[t] = wp.overload(
        _flag_migrating_particles,
        [
            wp.array(dtype=v),
            wp.vec3d,
            wp.vec3d,
            wp.array(dtype=wp.int32),
        ],
    )


###########################################################################################
########################### Warp Launchers ###############################################
###########################################################################################


def classify_particles(
    status: wp.array,
    mask: int,
    keep_flags: wp.array,
    remove_flags: wp.array,
    identity: wp.array,
    device: str,
) -> None:
    """Core warp launcher for the keep/remove classification.

    Parameters
    ----------
    status : wp.array, shape (num_particles,), dtype=wp.int32
        Per-particle status word.
    mask : int
        Bits that mark a particle for removal.
    keep_flags : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: 1 for kept particles, 0 otherwise.
    remove_flags : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: 1 for removed particles, 0 otherwise.
    identity : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: ``identity[i] = i``.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').

    See Also
    --------
    particleops.migration.partition.partition_particles : Consumes the outputs
    """
    num_particles = status.shape[0]
    if num_particles == 0:
        return

    wp.launch(
        kernel=_classify_particles,
        dim=num_particles,
        inputs=[status, wp.int32(mask), keep_flags, remove_flags, identity],
        device=device,
    )


def flag_migrating_particles(
    positions: wp.array,
    box_lo: tuple[float, float, float],
    box_hi: tuple[float, float, float],
    status: wp.array,
    wp_dtype: type,
    device: str,
) -> None:
    """Core warp launcher for staging particles that left the local domain.

    Parameters
    ----------
    positions : wp.array, shape (num_particles,), dtype=wp.vec4*
        Packed particle positions.
    box_lo, box_hi : tuple of float
        Corners of the orthorhombic local domain ``[lo, hi)``.
    status : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: Status words, direction bits are OR-ed in.
    wp_dtype : type
        Warp dtype (wp.float32 or wp.float64).
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    num_particles = positions.shape[0]
    if num_particles == 0:
        return

    wp.launch(
        kernel=_flag_migrating_particles_overload[wp_dtype],
        dim=num_particles,
        inputs=[
            positions,
            wp.vec3d(*box_lo),
            wp.vec3d(*box_hi),
            status,
        ],
        device=device,
    )
