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

"""PyTorch bindings for particle compaction and migration.

This module provides PyTorch custom operators that compact kept particle
records into the alternate local arrays, pack removed records into an
outbound transfer buffer, append inbound records, and rebuild the
tag -> index lookup table. The high-level wrappers validate buffer
capacities and raise `BufferCapacityError` before anything is written.
"""

from __future__ import annotations

import torch
import warp as wp

from particleops.migration.compaction import BufferCapacityError
from particleops.migration.compaction import (
    append_particles as wp_append_particles,
)
from particleops.migration.compaction import (
    rebuild_rtags as wp_rebuild_rtags,
)
from particleops.migration.compaction import (
    remove_particles as wp_remove_particles,
)
from particleops.types import get_wp_dtype, get_wp_vec4_dtype

__all__ = [
    "remove_particles",
    "append_particles",
    "rebuild_rtags",
]


def _byte_span(tensor: torch.Tensor) -> tuple[int, int]:
    """Half-open address range covered by the elements of a strided tensor."""
    if tensor.numel() == 0:
        return 0, 0
    extent = 1 + sum((n - 1) * s for n, s in zip(tensor.shape, tensor.stride()))
    start = tensor.data_ptr()
    return start, start + extent * tensor.element_size()


def _overlaps(a: torch.Tensor, b: torch.Tensor) -> bool:
    """Whether the memory of two tensors intersects."""
    if a.device != b.device:
        return False
    a_start, a_end = _byte_span(a)
    b_start, b_end = _byte_span(b)
    return a_start < b_end and b_start < a_end


@torch.library.custom_op(
    "particleops::remove_particles",
    mutates_args=(
        "out_positions",
        "out_velocities",
        "out_tags",
        "out_status",
        "send_positions",
        "send_velocities",
        "send_tags",
        "send_status",
        "rtag",
    ),
)
def _remove_particles_op(
    positions: torch.Tensor,
    velocities: torch.Tensor,
    tags: torch.Tensor,
    status: torch.Tensor,
    permutation: torch.Tensor,
    num_keep: torch.Tensor,
    out_positions: torch.Tensor,
    out_velocities: torch.Tensor,
    out_tags: torch.Tensor,
    out_status: torch.Tensor,
    send_positions: torch.Tensor,
    send_velocities: torch.Tensor,
    send_tags: torch.Tensor,
    send_status: torch.Tensor,
    rtag: torch.Tensor,
) -> None:
    """Internal custom op for compacting and packing particle records.

    See Also
    --------
    particleops.migration.compaction.remove_particles : Core warp launcher
    remove_particles : High-level wrapper function
    """
    if permutation.shape[0] == 0:
        return

    wp_dtype = get_wp_dtype(positions.dtype)
    vec4 = get_wp_vec4_dtype(positions.dtype)

    def records(t: torch.Tensor):
        return wp.from_torch(t, dtype=vec4, return_ctype=True)

    def ints(t: torch.Tensor):
        return wp.from_torch(t, dtype=wp.int32, return_ctype=True)

    wp_remove_particles(
        positions=records(positions),
        velocities=records(velocities),
        tags=ints(tags),
        status=ints(status),
        permutation=wp.from_torch(permutation, dtype=wp.int32),
        num_keep=ints(num_keep),
        out_positions=records(out_positions),
        out_velocities=records(out_velocities),
        out_tags=ints(out_tags),
        out_status=ints(out_status),
        send_positions=records(send_positions),
        send_velocities=records(send_velocities),
        send_tags=ints(send_tags),
        send_status=ints(send_status),
        rtag=ints(rtag),
        wp_dtype=wp_dtype,
        device=str(positions.device),
    )


def remove_particles(
    positions: torch.Tensor,
    velocities: torch.Tensor,
    tags: torch.Tensor,
    status: torch.Tensor,
    permutation: torch.Tensor,
    num_keep: torch.Tensor,
    out_positions: torch.Tensor,
    out_velocities: torch.Tensor,
    out_tags: torch.Tensor,
    out_status: torch.Tensor,
    send_positions: torch.Tensor,
    send_velocities: torch.Tensor,
    send_tags: torch.Tensor,
    send_status: torch.Tensor,
    rtag: torch.Tensor,
) -> int:
    """Compact kept particles and pack removed particles for sending.

    Record ``permutation[j]`` is written to slot ``j`` of the ``out_*``
    arrays when ``j < K`` and to slot ``j - K`` of the ``send_*`` buffer
    otherwise. ``rtag`` is updated for every moved tag (-1 for sent ones).

    Parameters
    ----------
    positions, velocities : torch.Tensor, shape (num_particles, 4)
        Active particle records, float32 or float64.
    tags, status : torch.Tensor, shape (num_particles,), dtype=int32
        Active tags and status words.
    permutation : torch.Tensor, shape (num_particles,), dtype=int32
        Partition permutation from `partition_particles`.
    num_keep : torch.Tensor, shape (1,), dtype=int32
        Number of kept particles K.
    out_positions, out_velocities, out_tags, out_status : torch.Tensor
        OUTPUT: Alternate local arrays with room for K records. Must not
        share memory with the active arrays.
    send_positions, send_velocities, send_tags, send_status : torch.Tensor
        OUTPUT: Outbound buffer with room for N - K records.
    rtag : torch.Tensor, shape (num_global,), dtype=int32
        OUTPUT: Tag -> index lookup.

    Returns
    -------
    int
        The new local particle count K.

    Raises
    ------
    BufferCapacityError
        If the alternate arrays or the outbound buffer are too small.
    ValueError
        If an output array shares memory with one of the active arrays.
    """
    num_particles = permutation.shape[0]
    num_kept = int(num_keep.item())
    num_removed = num_particles - num_kept

    sources = {
        "positions": positions,
        "velocities": velocities,
        "tags": tags,
        "status": status,
    }
    destinations = {
        "out_positions": out_positions,
        "out_velocities": out_velocities,
        "out_tags": out_tags,
        "out_status": out_status,
        "send_positions": send_positions,
        "send_velocities": send_velocities,
        "send_tags": send_tags,
        "send_status": send_status,
    }
    for out_name, out in destinations.items():
        for name, source in sources.items():
            if _overlaps(out, source):
                raise ValueError(
                    f"Compaction cannot run in place: {out_name} overlaps {name}"
                )
    out_capacity = min(
        out_positions.shape[0],
        out_velocities.shape[0],
        out_tags.shape[0],
        out_status.shape[0],
    )
    if out_capacity < num_kept:
        raise BufferCapacityError(out_capacity, num_kept)
    send_capacity = min(
        send_positions.shape[0],
        send_velocities.shape[0],
        send_tags.shape[0],
        send_status.shape[0],
    )
    if send_capacity < num_removed:
        raise BufferCapacityError(send_capacity, num_removed)

    _remove_particles_op(
        positions,
        velocities,
        tags,
        status,
        permutation,
        num_keep,
        out_positions,
        out_velocities,
        out_tags,
        out_status,
        send_positions,
        send_velocities,
        send_tags,
        send_status,
        rtag,
    )
    return num_kept


@torch.library.custom_op(
    "particleops::append_particles",
    mutates_args=("positions", "velocities", "tags", "status", "rtag"),
)
def _append_particles_op(
    in_positions: torch.Tensor,
    in_velocities: torch.Tensor,
    in_tags: torch.Tensor,
    in_status: torch.Tensor,
    num_local: int,
    migration_mask: int,
    positions: torch.Tensor,
    velocities: torch.Tensor,
    tags: torch.Tensor,
    status: torch.Tensor,
    rtag: torch.Tensor,
) -> None:
    """Internal custom op for appending inbound transfer elements.

    See Also
    --------
    particleops.migration.compaction.append_particles : Core warp launcher
    append_particles : High-level wrapper function
    """
    if in_tags.shape[0] == 0:
        return

    vec4 = get_wp_vec4_dtype(positions.dtype)

    wp_append_particles(
        in_positions=wp.from_torch(in_positions, dtype=vec4, return_ctype=True),
        in_velocities=wp.from_torch(in_velocities, dtype=vec4, return_ctype=True),
        in_tags=wp.from_torch(in_tags, dtype=wp.int32),
        in_status=wp.from_torch(in_status, dtype=wp.int32, return_ctype=True),
        num_local=num_local,
        migration_mask=migration_mask,
        positions=wp.from_torch(positions, dtype=vec4, return_ctype=True),
        velocities=wp.from_torch(velocities, dtype=vec4, return_ctype=True),
        tags=wp.from_torch(tags, dtype=wp.int32, return_ctype=True),
        status=wp.from_torch(status, dtype=wp.int32, return_ctype=True),
        rtag=wp.from_torch(rtag, dtype=wp.int32, return_ctype=True),
        wp_dtype=get_wp_dtype(positions.dtype),
        device=str(positions.device),
    )


def append_particles(
    in_positions: torch.Tensor,
    in_velocities: torch.Tensor,
    in_tags: torch.Tensor,
    in_status: torch.Tensor,
    num_local: int,
    migration_mask: int,
    positions: torch.Tensor,
    velocities: torch.Tensor,
    tags: torch.Tensor,
    status: torch.Tensor,
    rtag: torch.Tensor,
) -> int:
    """Append inbound transfer elements behind the local particles.

    Element ``j`` is written to slot ``num_local + j`` with the bits of
    ``migration_mask`` cleared from its status word.

    Parameters
    ----------
    in_positions, in_velocities : torch.Tensor, shape (num_inbound, 4)
        Inbound records.
    in_tags, in_status : torch.Tensor, shape (num_inbound,), dtype=int32
        Inbound tags and status words.
    num_local : int
        Current number of local particles K.
    migration_mask : int
        Status bits to clear on arrival.
    positions, velocities, tags, status : torch.Tensor
        OUTPUT: Active local arrays with room for K + num_inbound records.
    rtag : torch.Tensor, shape (num_global,), dtype=int32
        OUTPUT: Tag -> index lookup.

    Returns
    -------
    int
        The new local particle count K + num_inbound.

    Raises
    ------
    BufferCapacityError
        If the local arrays cannot hold the appended records.
    """
    num_inbound = in_tags.shape[0]
    if num_local < 0:
        raise ValueError(f"num_local must be non-negative, got {num_local}")
    if in_positions.dtype != positions.dtype or in_velocities.dtype != velocities.dtype:
        raise TypeError("Inbound records must match the dtype of the local arrays")

    required = num_local + num_inbound
    capacity = min(
        positions.shape[0], velocities.shape[0], tags.shape[0], status.shape[0]
    )
    if capacity < required:
        raise BufferCapacityError(capacity, required)

    _append_particles_op(
        in_positions,
        in_velocities,
        in_tags,
        in_status,
        int(num_local),
        int(migration_mask),
        positions,
        velocities,
        tags,
        status,
        rtag,
    )
    return required


@torch.library.custom_op("particleops::rebuild_rtags", mutates_args=("rtag",))
def _rebuild_rtags_op(tags: torch.Tensor, rtag: torch.Tensor) -> None:
    """Internal custom op for rebuilding the tag -> index lookup.

    See Also
    --------
    particleops.migration.compaction.rebuild_rtags : Core warp launcher
    """
    wp_rebuild_rtags(
        tags=wp.from_torch(tags, dtype=wp.int32),
        rtag=wp.from_torch(rtag, dtype=wp.int32),
        device=str(rtag.device),
    )


def rebuild_rtags(tags: torch.Tensor, rtag: torch.Tensor) -> None:
    """Rebuild the tag -> index lookup table.

    Parameters
    ----------
    tags : torch.Tensor, shape (num_particles,), dtype=int32
        Tags of the local particles, all in ``[0, num_global)``.
    rtag : torch.Tensor, shape (num_global,), dtype=int32
        OUTPUT: ``rtag[tags[i]] = i``, -1 for tags that are not local.
    """
    _rebuild_rtags_op(tags, rtag)
