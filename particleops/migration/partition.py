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

"""Core warp kernels and launchers for the stable two-way partition.

The partition is computed with two exclusive prefix sums, one over the
"keep" predicate and one over its complement. Kept elements land in slots
``[0, K)`` and removed elements in ``[K, N)``, each group in its original
relative order. See `particleops.torch.migration` for PyTorch bindings.
"""

import warp as wp

__all__ = [
    "partition_particles",
]


@wp.kernel(enable_backward=False)
def _count_kept(
    keep_flags: wp.array(dtype=wp.int32),
    keep_offsets: wp.array(dtype=wp.int32),
    num_keep: wp.array(dtype=wp.int32),
) -> None:
    """Total number of kept elements from the last exclusive scan entry.

    Parameters
    ----------
    keep_flags : wp.array, shape (num_particles,), dtype=wp.int32
        0/1 keep predicate.
    keep_offsets : wp.array, shape (num_particles,), dtype=wp.int32
        Exclusive prefix sum of keep_flags.
    num_keep : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Number of kept elements K.

    Notes
    -----
    - Thread launch: Single thread (dim=1)
    - Requires num_particles > 0
    """
    last = keep_flags.shape[0] - 1
    num_keep[0] = keep_offsets[last] + keep_flags[last]


@wp.kernel(enable_backward=False)
def _scatter_partition(
    keep_flags: wp.array(dtype=wp.int32),
    identity: wp.array(dtype=wp.int32),
    keep_offsets: wp.array(dtype=wp.int32),
    remove_offsets: wp.array(dtype=wp.int32),
    num_keep: wp.array(dtype=wp.int32),
    permutation: wp.array(dtype=wp.int32),
) -> None:
    """Scatter every source index to its partitioned output slot.

    Parameters
    ----------
    keep_flags : wp.array, shape (num_particles,), dtype=wp.int32
        0/1 keep predicate.
    identity : wp.array, shape (num_particles,), dtype=wp.int32
        Source index of each element.
    keep_offsets : wp.array, shape (num_particles,), dtype=wp.int32
        Exclusive prefix sum of keep_flags.
    remove_offsets : wp.array, shape (num_particles,), dtype=wp.int32
        Exclusive prefix sum of the complementary predicate.
    num_keep : wp.array, shape (1,), dtype=wp.int32
        Number of kept elements K.
    permutation : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: Output slot -> source index.

    Notes
    -----
    - Thread launch: One thread per element (dim=num_particles)
    - Every output slot is written by exactly one thread
    """
    i = wp.tid()

    slot = keep_offsets[i]
    if keep_flags[i] == 0:
        slot = num_keep[0] + remove_offsets[i]

    permutation[slot] = identity[i]


###########################################################################################
########################### Warp Launchers ###############################################
###########################################################################################


def partition_particles(
    keep_flags: wp.array,
    remove_flags: wp.array,
    identity: wp.array,
    keep_offsets: wp.array,
    remove_offsets: wp.array,
    permutation: wp.array,
    num_keep: wp.array,
    device: str,
) -> None:
    """Core warp launcher for the stable keep/remove partition.

    Parameters
    ----------
    keep_flags : wp.array, shape (num_particles,), dtype=wp.int32
        0/1 keep predicate from `classify_particles`.
    remove_flags : wp.array, shape (num_particles,), dtype=wp.int32
        Complement of keep_flags.
    identity : wp.array, shape (num_particles,), dtype=wp.int32
        Source index of each element.
    keep_offsets : wp.array, shape (num_particles,), dtype=wp.int32
        SCRATCH: Exclusive scan of keep_flags.
    remove_offsets : wp.array, shape (num_particles,), dtype=wp.int32
        SCRATCH: Exclusive scan of remove_flags.
    permutation : wp.array, shape (num_particles,), dtype=wp.int32
        OUTPUT: Output slot -> source index. The first K entries are the kept
        sources, the rest the removed sources, both in original order.
    num_keep : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: Number of kept elements K.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').

    Notes
    -----
    - keep_flags, remove_flags, keep_offsets and remove_offsets must be
      regular warp arrays (not ctypes) since ``wp.utils.array_scan`` is used.
    - An empty input produces K = 0 and leaves permutation untouched.

    See Also
    --------
    particleops.migration.flags.classify_particles : Produces the predicates
    particleops.migration.compaction.remove_particles : Consumes the permutation
    """
    num_particles = keep_flags.shape[0]
    if num_particles == 0:
        num_keep.zero_()
        return

    # [1, 0, 0, 1, 1] -> [0, 1, 1, 1, 2]
    wp.utils.array_scan(keep_flags, keep_offsets, inclusive=False)
    # [0, 1, 1, 0, 0] -> [0, 0, 1, 2, 2]
    wp.utils.array_scan(remove_flags, remove_offsets, inclusive=False)

    wp.launch(
        kernel=_count_kept,
        dim=1,
        inputs=[keep_flags, keep_offsets, num_keep],
        device=device,
    )

    wp.launch(
        kernel=_scatter_partition,
        dim=num_particles,
        inputs=[
            keep_flags,
            identity,
            keep_offsets,
            remove_offsets,
            num_keep,
            permutation,
        ],
        device=device,
    )
