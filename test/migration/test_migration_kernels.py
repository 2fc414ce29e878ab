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

"""Tests for the particle migration warp launchers."""

import numpy as np
import pytest
import torch
import warp as wp

from particleops.migration.compaction import (
    append_particles,
    rebuild_rtags,
    remove_particles,
)
from particleops.migration.flags import (
    MigrationFlag,
    classify_particles,
    flag_migrating_particles,
)
from particleops.migration.partition import partition_particles

devices = ["cpu"]
if torch.cuda.is_available():
    devices.append("cuda:0")
wp_dtypes = [wp.float32, wp.float64]


def _int_array(values, device):
    return wp.array(np.asarray(values, dtype=np.int32), dtype=wp.int32, device=device)


def _classify_and_partition(status, mask, device):
    """Run classification and partition, return host permutation and K."""
    n = len(status)
    wp_status = _int_array(status, device)
    keep = wp.zeros(n, dtype=wp.int32, device=device)
    remove = wp.zeros(n, dtype=wp.int32, device=device)
    identity = wp.zeros(n, dtype=wp.int32, device=device)
    classify_particles(wp_status, mask, keep, remove, identity, device)

    keep_offsets = wp.zeros(n, dtype=wp.int32, device=device)
    remove_offsets = wp.zeros(n, dtype=wp.int32, device=device)
    permutation = wp.zeros(n, dtype=wp.int32, device=device)
    num_keep = wp.zeros(1, dtype=wp.int32, device=device)
    partition_particles(
        keep, remove, identity, keep_offsets, remove_offsets, permutation, num_keep, device
    )
    return keep.numpy(), permutation, num_keep


def _reference_stable_partition(keep):
    indices = np.arange(len(keep))
    return np.concatenate([indices[keep == 1], indices[keep == 0]])


@pytest.mark.parametrize("device", devices)
class TestClassifyParticles:
    """Test the keep/remove classification launcher."""

    def test_bitmask(self, device):
        """Only bits in the mask mark a particle for removal."""
        status = [0, 1, 2, 3, 4, 5]
        n = len(status)
        keep = wp.zeros(n, dtype=wp.int32, device=device)
        remove = wp.zeros(n, dtype=wp.int32, device=device)
        identity = wp.zeros(n, dtype=wp.int32, device=device)

        classify_particles(_int_array(status, device), 0b101, keep, remove, identity, device)

        np.testing.assert_array_equal(keep.numpy(), [1, 0, 1, 0, 0, 0])
        np.testing.assert_array_equal(remove.numpy(), 1 - keep.numpy())
        np.testing.assert_array_equal(identity.numpy(), np.arange(n))

    def test_empty(self, device):
        """N = 0 is a no-op."""
        empty = wp.zeros(0, dtype=wp.int32, device=device)
        classify_particles(empty, 1, empty, empty, empty, device)
        assert empty.shape == (0,)


@pytest.mark.parametrize("device", devices)
class TestPartitionParticles:
    """Test the stable partition launcher."""

    def test_worked_example(self, device):
        """status [0, 1, 1, 0, 0] with mask 1 gives K = 3 and [0, 3, 4, 1, 2]."""
        keep, permutation, num_keep = _classify_and_partition([0, 1, 1, 0, 0], 1, device)

        np.testing.assert_array_equal(keep, [1, 0, 0, 1, 1])
        assert num_keep.numpy()[0] == 3
        np.testing.assert_array_equal(permutation.numpy(), [0, 3, 4, 1, 2])

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_matches_reference_stable_partition(self, device, seed):
        """Relative order is preserved within both groups."""
        rng = np.random.default_rng(seed)
        status = rng.integers(0, 4, size=257)
        keep, permutation, num_keep = _classify_and_partition(status, 0b10, device)

        expected = _reference_stable_partition(keep)
        np.testing.assert_array_equal(permutation.numpy(), expected)
        assert num_keep.numpy()[0] == keep.sum()

    def test_permutation_is_bijection(self, device):
        rng = np.random.default_rng(7)
        status = rng.integers(0, 64, size=100)
        _, permutation, _ = _classify_and_partition(status, MigrationFlag.EAST, device)
        np.testing.assert_array_equal(np.sort(permutation.numpy()), np.arange(100))

    def test_no_bits_set_is_identity(self, device):
        """With no status bits set, K == N and the permutation is the identity."""
        _, permutation, num_keep = _classify_and_partition(
            np.zeros(10), MigrationFlag.ALL, device
        )
        assert num_keep.numpy()[0] == 10
        np.testing.assert_array_equal(permutation.numpy(), np.arange(10))

    def test_all_removed(self, device):
        _, permutation, num_keep = _classify_and_partition(np.ones(6), 1, device)
        assert num_keep.numpy()[0] == 0
        np.testing.assert_array_equal(permutation.numpy(), np.arange(6))

    def test_empty(self, device):
        """N = 0 gives K = 0."""
        _, permutation, num_keep = _classify_and_partition([], 1, device)
        assert num_keep.numpy()[0] == 0
        assert permutation.shape == (0,)


def _records(n, wp_dtype, device, offset=0.0):
    vec4 = wp.vec4f if wp_dtype == wp.float32 else wp.vec4d
    np_dtype = np.float32 if wp_dtype == wp.float32 else np.float64
    data = (np.arange(4 * n, dtype=np_dtype).reshape(n, 4) + offset).astype(np_dtype)
    return wp.array(data, dtype=vec4, device=device), data


@pytest.mark.parametrize("device", devices)
@pytest.mark.parametrize("wp_dtype", wp_dtypes)
class TestCompaction:
    """Test the remove and append launchers."""

    def test_remove_worked_example(self, device, wp_dtype):
        """Particles 0, 3, 4 are kept in order, 1 and 2 are packed for sending."""
        status_values = [0, 1, 1, 0, 0]
        n = 5
        tags_values = [10, 11, 12, 13, 14]
        positions, positions_np = _records(n, wp_dtype, device)
        velocities, velocities_np = _records(n, wp_dtype, device, offset=100.0)
        tags = _int_array(tags_values, device)
        status = _int_array(status_values, device)
        _, permutation, num_keep = _classify_and_partition(status_values, 1, device)

        out_positions, _ = _records(n, wp_dtype, device, offset=-1.0)
        out_velocities, _ = _records(n, wp_dtype, device, offset=-1.0)
        out_tags = wp.zeros(n, dtype=wp.int32, device=device)
        out_status = wp.zeros(n, dtype=wp.int32, device=device)
        send_positions, _ = _records(2, wp_dtype, device)
        send_velocities, _ = _records(2, wp_dtype, device)
        send_tags = wp.zeros(2, dtype=wp.int32, device=device)
        send_status = wp.zeros(2, dtype=wp.int32, device=device)
        rtag = wp.full(15, -1, dtype=wp.int32, device=device)
        rebuild_rtags(tags, rtag, device)

        remove_particles(
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
            wp_dtype,
            device,
        )

        np.testing.assert_array_equal(out_tags.numpy()[:3], [10, 13, 14])
        np.testing.assert_array_equal(send_tags.numpy(), [11, 12])
        np.testing.assert_array_equal(out_positions.numpy()[:3], positions_np[[0, 3, 4]])
        np.testing.assert_array_equal(
            out_velocities.numpy()[:3], velocities_np[[0, 3, 4]]
        )
        np.testing.assert_array_equal(send_positions.numpy(), positions_np[[1, 2]])
        np.testing.assert_array_equal(send_status.numpy(), [1, 1])
        np.testing.assert_array_equal(out_status.numpy()[:3], [0, 0, 0])

        expected_rtag = np.full(15, -1)
        expected_rtag[[10, 13, 14]] = [0, 1, 2]
        np.testing.assert_array_equal(rtag.numpy(), expected_rtag)

    def test_append_clears_migration_bits(self, device, wp_dtype):
        """Inbound elements land behind K local records with mask bits cleared."""
        capacity = 6
        positions, _ = _records(capacity, wp_dtype, device)
        velocities, _ = _records(capacity, wp_dtype, device)
        tags = _int_array([0, 1, 0, 0, 0, 0], device)
        status = wp.zeros(capacity, dtype=wp.int32, device=device)
        rtag = wp.full(8, -1, dtype=wp.int32, device=device)
        rebuild_rtags(_int_array([0, 1], device), rtag, device)

        in_positions, in_positions_np = _records(2, wp_dtype, device, offset=50.0)
        in_velocities, in_velocities_np = _records(2, wp_dtype, device, offset=60.0)
        in_tags = _int_array([5, 7], device)
        in_status = _int_array(
            [int(MigrationFlag.EAST | MigrationFlag.UP), int(MigrationFlag.WEST) | 64], device
        )

        append_particles(
            in_positions,
            in_velocities,
            in_tags,
            in_status,
            2,
            MigrationFlag.ALL,
            positions,
            velocities,
            tags,
            status,
            rtag,
            wp_dtype,
            device,
        )

        np.testing.assert_array_equal(tags.numpy()[:4], [0, 1, 5, 7])
        np.testing.assert_array_equal(positions.numpy()[2:4], in_positions_np)
        np.testing.assert_array_equal(velocities.numpy()[2:4], in_velocities_np)
        # Bits outside the migration mask survive
        np.testing.assert_array_equal(status.numpy()[2:4], [0, 64])
        assert rtag.numpy()[5] == 2
        assert rtag.numpy()[7] == 3

    def test_append_empty(self, device, wp_dtype):
        positions, positions_np = _records(3, wp_dtype, device)
        empty_records, _ = _records(0, wp_dtype, device)
        empty = wp.zeros(0, dtype=wp.int32, device=device)
        ints = wp.zeros(3, dtype=wp.int32, device=device)
        append_particles(
            empty_records,
            empty_records,
            empty,
            empty,
            3,
            MigrationFlag.ALL,
            positions,
            positions,
            ints,
            ints,
            ints,
            wp_dtype,
            device,
        )
        np.testing.assert_array_equal(positions.numpy(), positions_np)


@pytest.mark.parametrize("device", devices)
class TestRebuildRtags:
    """Test the reverse lookup launcher."""

    def test_rebuild(self, device):
        rtag = wp.full(6, 99, dtype=wp.int32, device=device)
        rebuild_rtags(_int_array([4, 0, 2], device), rtag, device)
        np.testing.assert_array_equal(rtag.numpy(), [1, -1, 2, -1, 0, -1])

    def test_no_local_particles(self, device):
        rtag = wp.full(3, 5, dtype=wp.int32, device=device)
        rebuild_rtags(wp.zeros(0, dtype=wp.int32, device=device), rtag, device)
        np.testing.assert_array_equal(rtag.numpy(), [-1, -1, -1])


@pytest.mark.parametrize("device", devices)
@pytest.mark.parametrize("wp_dtype", wp_dtypes)
class TestFlagMigratingParticles:
    """Test the domain staging launcher."""

    def test_direction_bits(self, device, wp_dtype):
        vec4 = wp.vec4f if wp_dtype == wp.float32 else wp.vec4d
        positions = wp.array(
            np.array(
                [
                    [0.5, 0.5, 0.5, 0.0],
                    [1.0, 0.5, 0.5, 0.0],
                    [-0.1, 0.5, 0.5, 0.0],
                    [0.5, 1.5, -2.0, 0.0],
                    [0.5, -0.5, 3.0, 0.0],
                    [0.0, 0.0, 0.0, 0.0],
                ]
            ),
            dtype=vec4,
            device=device,
        )
        status = _int_array([0, 0, 0, 0, 0, 128], device)

        flag_migrating_particles(
            positions, (0.0, 0.0, 0.0), (1.0, 1.0, 1.0), status, wp_dtype, device
        )

        expected = [
            0,
            MigrationFlag.EAST,
            MigrationFlag.WEST,
            MigrationFlag.NORTH | MigrationFlag.DOWN,
            MigrationFlag.SOUTH | MigrationFlag.UP,
            128,
        ]
        np.testing.assert_array_equal(status.numpy(), [int(e) for e in expected])
