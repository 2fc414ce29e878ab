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

"""Core warp kernels and launchers for particle compaction and migration.

Particle records are stored as four parallel arrays (positions, velocities,
tags, status). Removal reads the active arrays and writes kept records to the
alternate arrays and removed records to an outbound transfer buffer, so that
source and destination never alias. Appending writes inbound transfer
elements behind the K kept records. Both paths keep the reverse lookup table
``rtag`` (tag -> local index, -1 when not local) in sync.

See `particleops.torch.migration` for PyTorch bindings.
"""

from typing import Any

import warp as wp

from particleops.migration.flags import NOT_LOCAL


class BufferCapacityError(Exception):
    """Exception raised when a destination buffer is too small.

    The core launchers never check capacities; the bindings compare buffer
    sizes against the counts an operation needs and raise this error before
    anything is written.

    Parameters
    ----------
    capacity : int
        Number of records the buffer can hold.
    required : int
        Number of records the operation needs to write.
    """

    def __init__(self, capacity: int, required: int):
        super().__init__(
            f"The buffer is too small for the requested operation: "
            f"{required} > {capacity}."
        )
        self.capacity = capacity
        self.required = required


__all__ = [
    "BufferCapacityError",
    "remove_particles",
    "append_particles",
    "rebuild_rtags",
]


###########################################################################################
########################### Remove ########################################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _remove_particles(
    positions: wp.array(dtype=Any),
    velocities: wp.array(dtype=Any),
    tags: wp.array(dtype=wp.int32),
    status: wp.array(dtype=wp.int32),
    permutation: wp.array(dtype=wp.int32),
    num_keep: wp.array(dtype=wp.int32),
    out_positions: wp.array(dtype=Any),
    out_velocities: wp.array(dtype=Any),
    out_tags: wp.array(dtype=wp.int32),
    out_status: wp.array(dtype=wp.int32),
    send_positions: wp.array(dtype=Any),
    send_velocities: wp.array(dtype=Any),
    send_tags: wp.array(dtype=wp.int32),
    send_status: wp.array(dtype=wp.int32),
    rtag: wp.array(dtype=wp.int32),
) -> None:
    """Move each record to its partitioned slot.

    Parameters
    ----------
    positions, velocities : wp.array, shape (num_particles,), dtype=wp.vec4*
        Active particle records.
    tags, status : wp.array, shape (num_particles,), dtype=wp.int32
        Active particle tags and status words.
    permutation : wp.array, shape (num_particles,), dtype=wp.int32
        Output slot -> source index.
    num_keep : wp.array, shape (1,), dtype=wp.int32
        Number of kept records K.
    out_positions, out_velocities, out_tags, out_status : wp.array
        OUTPUT: Alternate local arrays, slots [0, K) are written.
    send_positions, send_velocities, send_tags, send_status : wp.array
        OUTPUT: Outbound transfer buffer, slots [0, N - K) are written.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        OUTPUT: Reverse lookup, updated for every moved tag.

    Notes
    -----
    - Thread launch: One thread per output slot (dim=num_particles)
    - Every destination slot and every rtag entry is written exactly once
    """
    j = wp.tid()
    src = permutation[j]
    k = num_keep[0]
    tag = tags[src]

    if j < k:
        out_positions[j] = positions[src]
        out_velocities[j] = velocities[src]
        out_tags[j] = tag
        out_status[j] = status[src]
        rtag[tag] = j
    else:
        slot = j - k
        send_positions[slot] = positions[src]
        send_velocities[slot] = velocities[src]
        send_tags[slot] = tag
        send_status[slot] = status[src]
        rtag[tag] = NOT_LOCAL


###########################################################################################
########################### Append ########################################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _append_particles(
    in_positions: wp.array(dtype=Any),
    in_velocities: wp.array(dtype=Any),
    in_tags: wp.array(dtype=wp.int32),
    in_status: wp.array(dtype=wp.int32),
    num_local: wp.int32,
    keep_bits: wp.int32,
    positions: wp.array(dtype=Any),
    velocities: wp.array(dtype=Any),
    tags: wp.array(dtype=wp.int32),
    status: wp.array(dtype=wp.int32),
    rtag: wp.array(dtype=wp.int32),
) -> None:
    """Write inbound transfer elements behind the local records.

    Parameters
    ----------
    in_positions, in_velocities : wp.array, shape (num_inbound,), dtype=wp.vec4*
        Inbound transfer buffer records.
    in_tags, in_status : wp.array, shape (num_inbound,), dtype=wp.int32
        Inbound tags and status words.
    num_local : wp.int32
        Current number of local records K.
    keep_bits : wp.int32
        Complement of the migration mask; status words are AND-ed with it.
    positions, velocities, tags, status : wp.array
        OUTPUT: Active local arrays, slots [K, K + num_inbound) are written.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        OUTPUT: Reverse lookup for the appended tags.

    Notes
    -----
    - Thread launch: One thread per inbound element (dim=num_inbound)
    """
    j = wp.tid()
    dst = num_local + j
    tag = in_tags[j]

    positions[dst] = in_positions[j]
    velocities[dst] = in_velocities[j]
    tags[dst] = tag
    status[dst] = in_status[j] & keep_bits
    rtag[tag] = dst


###########################################################################################
########################### Reverse Lookup ################################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _reset_rtags(rtag: wp.array(dtype=wp.int32)) -> None:
    """Mark every tag as not local."""
    i = wp.tid()
    rtag[i] = NOT_LOCAL


@wp.kernel(enable_backward=False)
def _scatter_rtags(
    tags: wp.array(dtype=wp.int32),
    rtag: wp.array(dtype=wp.int32),
) -> None:
    """Write ``rtag[tags[i]] = i`` for every local record."""
    i = wp.tid()
    rtag[tags[i]] = i


_T = [wp.float32, wp.float64]
_V4 = [wp.vec4f, wp.vec4d]
_remove_particles_overload = {}
_append_particles_overload = {}
for t, v in zip(_T, _V4):
    _remove_particles_overload[t] = wp.overload(
        _remove_particles,
        [
            wp.array(dtype=v),
            wp.array(dtype=v),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=v),
            wp.array(dtype=v),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=v),
            wp.array(dtype=v),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
        ],
    )
    _append_particles_overload[t] = wp.overload(
        _append_particles,
        [
            wp.array(dtype=v),
            wp.array(dtype=v),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.int32,
            wp.int32,
            wp.array(dtype=v),
            wp.array(dtype=v),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
        ],
    )


###########################################################################################
########################### Warp Launchers ###############################################
###########################################################################################


def remove_particles(
    positions: wp.array,
    velocities: wp.array,
    tags: wp.array,
    status: wp.array,
    permutation: wp.array,
    num_keep: wp.array,
    out_positions: wp.array,
    out_velocities: wp.array,
    out_tags: wp.array,
    out_status: wp.array,
    send_positions: wp.array,
    send_velocities: wp.array,
    send_tags: wp.array,
    send_status: wp.array,
    rtag: wp.array,
    wp_dtype: type,
    device: str,
) -> None:
    """Core warp launcher for compacting kept records and packing removed ones.

    Parameters
    ----------
    positions, velocities : wp.array, shape (num_particles,), dtype=wp.vec4*
        Active particle records (read only).
    tags, status : wp.array, shape (num_particles,), dtype=wp.int32
        Active tags and status words (read only).
    permutation : wp.array, shape (num_particles,), dtype=wp.int32
        Output slot -> source index from `partition_particles`.
    num_keep : wp.array, shape (1,), dtype=wp.int32
        Number of kept records K from `partition_particles`.
    out_positions, out_velocities, out_tags, out_status : wp.array
        OUTPUT: Alternate local arrays with room for at least K records.
        Must not alias the active arrays.
    send_positions, send_velocities, send_tags, send_status : wp.array
        OUTPUT: Outbound transfer buffer with room for at least N - K records.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        OUTPUT: Reverse lookup table.
    wp_dtype : type
        Warp dtype (wp.float32 or wp.float64).
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').

    Notes
    -----
    - This is a low-level warp interface and does not validate capacities.
      Undersized buffers are a caller error.

    See Also
    --------
    particleops.torch.migration.compaction.remove_particles : Validating binding
    """
    num_particles = permutation.shape[0]
    if num_particles == 0:
        return

    wp.launch(
        kernel=_remove_particles_overload[wp_dtype],
        dim=num_particles,
        inputs=[
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
        ],
        device=device,
    )


def append_particles(
    in_positions: wp.array,
    in_velocities: wp.array,
    in_tags: wp.array,
    in_status: wp.array,
    num_local: int,
    migration_mask: int,
    positions: wp.array,
    velocities: wp.array,
    tags: wp.array,
    status: wp.array,
    rtag: wp.array,
    wp_dtype: type,
    device: str,
) -> None:
    """Core warp launcher for appending inbound transfer elements.

    Parameters
    ----------
    in_positions, in_velocities : wp.array, shape (num_inbound,), dtype=wp.vec4*
        Inbound transfer buffer records.
    in_tags, in_status : wp.array, shape (num_inbound,), dtype=wp.int32
        Inbound tags and status words.
    num_local : int
        Current number of local records K.
    migration_mask : int
        Status bits that are cleared on arrival.
    positions, velocities, tags, status : wp.array
        OUTPUT: Active local arrays with room for K + num_inbound records.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        OUTPUT: Reverse lookup table.
    wp_dtype : type
        Warp dtype (wp.float32 or wp.float64).
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    num_inbound = in_tags.shape[0]
    if num_inbound == 0:
        return

    keep_bits = ~int(migration_mask)

    wp.launch(
        kernel=_append_particles_overload[wp_dtype],
        dim=num_inbound,
        inputs=[
            in_positions,
            in_velocities,
            in_tags,
            in_status,
            wp.int32(num_local),
            wp.int32(keep_bits),
            positions,
            velocities,
            tags,
            status,
            rtag,
        ],
        device=device,
    )


def rebuild_rtags(
    tags: wp.array,
    rtag: wp.array,
    device: str,
) -> None:
    """Core warp launcher rebuilding the reverse lookup from scratch.

    Parameters
    ----------
    tags : wp.array, shape (num_particles,), dtype=wp.int32
        Tags of the local records.
    rtag : wp.array, shape (num_global,), dtype=wp.int32
        OUTPUT: Set to -1 everywhere, then ``rtag[tags[i]] = i``.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    if rtag.shape[0] > 0:
        wp.launch(
            kernel=_reset_rtags,
            dim=rtag.shape[0],
            inputs=[rtag],
            device=device,
        )
    if tags.shape[0] > 0:
        wp.launch(
            kernel=_scatter_rtags,
            dim=tags.shape[0],
            inputs=[tags, rtag],
            device=device,
        )
