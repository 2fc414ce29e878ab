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

"""Tests for the PyTorch bindings of classification, partition and compaction."""

import pytest
import torch

from particleops.migration.compaction import BufferCapacityError
from particleops.migration.flags import MigrationFlag
from particleops.torch.migration import (
    append_particles,
    classify_particles,
    flag_migrating_particles,
    partition_particles,
    rebuild_rtags,
    remove_particles,
)


def make_records(n, dtype, device, offset=0.0):
    """Distinct (n, 4) records so that moved rows can be traced."""
    return (
        torch.arange(4 * n, dtype=dtype, device=device).reshape(n, 4) + offset
    ).contiguous()


def reference_partition(keep):
    indices = torch.arange(keep.shape[0], device=keep.device, dtype=torch.int32)
    return torch.cat([indices[keep == 1], indices[keep == 0]])


class TestClassifyAndPartition:
    """Test classify_particles and partition_particles."""

    def test_worked_example(self, device):
        status = torch.tensor([0, 1, 1, 0, 0], dtype=torch.int32, device=device)
        keep, remove, identity = classify_particles(status, 1)
        permutation, num_keep = partition_particles(keep, remove, identity)

        assert keep.tolist() == [1, 0, 0, 1, 1]
        assert remove.tolist() == [0, 1, 1, 0, 0]
        assert identity.tolist() == [0, 1, 2, 3, 4]
        assert permutation.tolist() == [0, 3, 4, 1, 2]
        assert num_keep.item() == 3

    @pytest.mark.parametrize("mask", [1, 2, 3, int(MigrationFlag.ALL)])
    def test_random_status(self, device, mask):
        generator = torch.Generator().manual_seed(mask)
        status = torch.randint(0, 64, (500,), generator=generator, dtype=torch.int32)
        status = status.to(device)

        keep, remove, identity = classify_particles(status, mask)
        permutation, num_keep = partition_particles(keep, remove, identity)

        expected_keep = ((status & mask) == 0).to(torch.int32)
        torch.testing.assert_close(keep, expected_keep)
        torch.testing.assert_close(permutation, reference_partition(keep))
        assert num_keep.item() == int(expected_keep.sum())

    def test_empty(self, device):
        status = torch.zeros(0, dtype=torch.int32, device=device)
        permutation, num_keep = partition_particles(*classify_particles(status, 1))
        assert permutation.shape == (0,)
        assert num_keep.item() == 0

    def test_status_dtype(self, device):
        status = torch.zeros(4, dtype=torch.int64, device=device)
        with pytest.raises(TypeError, match="int32"):
            classify_particles(status, 1)

    def test_length_mismatch(self, device):
        flags = torch.zeros(4, dtype=torch.int32, device=device)
        with pytest.raises(ValueError, match="same length"):
            partition_particles(flags, flags[:3], flags)


class TestFlagMigratingParticles:
    """Test the staging binding."""

    def test_bits(self, device, dtype):
        positions = torch.tensor(
            [[0.5, 0.5, 0.5, 0.0], [1.5, -0.1, 0.5, 0.0], [0.5, 0.5, 1.0, 1.0]],
            dtype=dtype,
            device=device,
        )
        status = torch.zeros(3, dtype=torch.int32, device=device)
        flag_migrating_particles(positions, (0, 0, 0), (1, 1, 1), status)

        expected = [0, int(MigrationFlag.EAST | MigrationFlag.SOUTH), int(MigrationFlag.UP)]
        assert status.tolist() == expected

    def test_existing_bits_preserved(self, device, dtype):
        positions = torch.tensor([[2.0, 0.5, 0.5, 0.0]], dtype=dtype, device=device)
        status = torch.tensor([256], dtype=torch.int32, device=device)
        flag_migrating_particles(positions, (0, 0, 0), (1, 1, 1), status)
        assert status.item() == 256 | int(MigrationFlag.EAST)

    def test_bad_shape(self, device, dtype):
        positions = torch.zeros((3, 3), dtype=dtype, device=device)
        status = torch.zeros(3, dtype=torch.int32, device=device)
        with pytest.raises(ValueError, match="shape"):
            flag_migrating_particles(positions, (0, 0, 0), (1, 1, 1), status)


class TestRemoveAndAppend:
    """Test remove_particles and append_particles."""

    def _setup(self, status_values, dtype, device):
        n = len(status_values)
        positions = make_records(n, dtype, device)
        velocities = make_records(n, dtype, device, offset=1000.0)
        tags = torch.arange(n, dtype=torch.int32, device=device)
        status = torch.tensor(status_values, dtype=torch.int32, device=device)
        rtag = torch.full((n,), -1, dtype=torch.int32, device=device)
        rebuild_rtags(tags, rtag)
        permutation, num_keep = partition_particles(*classify_particles(status, 1))
        return positions, velocities, tags, status, rtag, permutation, num_keep

    def test_remove(self, device, dtype):
        positions, velocities, tags, status, rtag, permutation, num_keep = self._setup(
            [0, 1, 1, 0, 0], dtype, device
        )
        out = [torch.zeros_like(positions), torch.zeros_like(velocities)]
        out += [torch.zeros_like(tags), torch.zeros_like(status)]
        send = [torch.zeros((2, 4), dtype=dtype, device=device) for _ in range(2)]
        send += [torch.zeros(2, dtype=torch.int32, device=device) for _ in range(2)]

        num_kept = remove_particles(
            positions, velocities, tags, status, permutation, num_keep, *out, *send, rtag
        )

        assert num_kept == 3
        assert out[2][:3].tolist() == [0, 3, 4]
        assert send[2].tolist() == [1, 2]
        torch.testing.assert_close(out[0][:3], positions[[0, 3, 4]])
        torch.testing.assert_close(out[1][:3], velocities[[0, 3, 4]])
        torch.testing.assert_close(send[0], positions[[1, 2]])
        torch.testing.assert_close(send[1], velocities[[1, 2]])
        assert rtag.tolist() == [0, -1, -1, 1, 2]

    def test_remove_send_buffer_too_small(self, device, dtype):
        positions, velocities, tags, status, rtag, permutation, num_keep = self._setup(
            [0, 1, 1, 0, 0], dtype, device
        )
        out = [torch.zeros_like(positions), torch.zeros_like(velocities)]
        out += [torch.zeros_like(tags), torch.zeros_like(status)]
        send = [torch.zeros((1, 4), dtype=dtype, device=device) for _ in range(2)]
        send += [torch.zeros(1, dtype=torch.int32, device=device) for _ in range(2)]

        with pytest.raises(BufferCapacityError) as excinfo:
            remove_particles(
                positions,
                velocities,
                tags,
                status,
                permutation,
                num_keep,
                *out,
                *send,
                rtag,
            )
        assert excinfo.value.capacity == 1
        assert excinfo.value.required == 2
        # Nothing was written
        assert rtag.tolist() == [0, 1, 2, 3, 4]

    def test_remove_in_place_rejected(self, device, dtype):
        positions, velocities, tags, status, rtag, permutation, num_keep = self._setup(
            [0, 1, 0], dtype, device
        )
        send = [torch.zeros((1, 4), dtype=dtype, device=device) for _ in range(2)]
        send += [torch.zeros(1, dtype=torch.int32, device=device) for _ in range(2)]
        with pytest.raises(ValueError, match="in place"):
            remove_particles(
                positions,
                velocities,
                tags,
                status,
                permutation,
                num_keep,
                positions,
                velocities,
                tags,
                status,
                *send,
                rtag,
            )

    def test_remove_offset_view_rejected(self, device, dtype):
        """Alternate arrays that overlap the active ones at an offset."""
        _, _, tags, status, rtag, permutation, num_keep = self._setup(
            [0, 1, 0], dtype, device
        )
        arena = make_records(4, dtype, device)
        positions = arena[:3]
        velocities = make_records(3, dtype, device, offset=1000.0)
        out = [arena[1:4], torch.zeros_like(velocities)]
        out += [torch.zeros_like(tags), torch.zeros_like(status)]
        send = [torch.zeros((1, 4), dtype=dtype, device=device) for _ in range(2)]
        send += [torch.zeros(1, dtype=torch.int32, device=device) for _ in range(2)]
        assert out[0].data_ptr() != positions.data_ptr()

        with pytest.raises(ValueError, match="out_positions overlaps positions"):
            remove_particles(
                positions,
                velocities,
                tags,
                status,
                permutation,
                num_keep,
                *out,
                *send,
                rtag,
            )
        assert rtag.tolist() == [0, 1, 2]

    def test_remove_send_buffer_overlap_rejected(self, device, dtype):
        positions, velocities, tags, status, rtag, permutation, num_keep = self._setup(
            [0, 1, 0], dtype, device
        )
        out = [torch.zeros_like(positions), torch.zeros_like(velocities)]
        out += [torch.zeros_like(tags), torch.zeros_like(status)]
        send = [torch.zeros((1, 4), dtype=dtype, device=device), velocities[2:]]
        send += [torch.zeros(1, dtype=torch.int32, device=device) for _ in range(2)]

        with pytest.raises(ValueError, match="send_velocities overlaps velocities"):
            remove_particles(
                positions,
                velocities,
                tags,
                status,
                permutation,
                num_keep,
                *out,
                *send,
                rtag,
            )

    def test_remove_disjoint_views_of_one_arena(self, device, dtype):
        """Views of a shared allocation are accepted when they do not overlap."""
        _, velocities, tags, status, rtag, permutation, num_keep = self._setup(
            [0, 1, 0], dtype, device
        )
        arena = make_records(6, dtype, device)
        positions = arena[:3]
        expected = positions.clone()
        out = [arena[3:], torch.zeros_like(velocities)]
        out += [torch.zeros_like(tags), torch.zeros_like(status)]
        send = [torch.zeros((1, 4), dtype=dtype, device=device) for _ in range(2)]
        send += [torch.zeros(1, dtype=torch.int32, device=device) for _ in range(2)]

        num_kept = remove_particles(
            positions,
            velocities,
            tags,
            status,
            permutation,
            num_keep,
            *out,
            *send,
            rtag,
        )

        assert num_kept == 2
        torch.testing.assert_close(arena[3:5], expected[[0, 2]])
        torch.testing.assert_close(send[0][0], expected[1])

    def test_append(self, device, dtype):
        capacity = 5
        positions = torch.zeros((capacity, 4), dtype=dtype, device=device)
        velocities = torch.zeros_like(positions)
        tags = torch.zeros(capacity, dtype=torch.int32, device=device)
        status = torch.zeros_like(tags)
        tags[:2] = torch.tensor([3, 4], dtype=torch.int32, device=device)
        rtag = torch.full((8,), -1, dtype=torch.int32, device=device)
        rebuild_rtags(tags[:2], rtag)

        in_positions = make_records(2, dtype, device, offset=7.0)
        in_velocities = make_records(2, dtype, device, offset=9.0)
        in_tags = torch.tensor([6, 0], dtype=torch.int32, device=device)
        in_status = torch.tensor(
            [int(MigrationFlag.WEST), int(MigrationFlag.UP) | 512],
            dtype=torch.int32,
            device=device,
        )

        num_local = append_particles(
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
        )

        assert num_local == 4
        assert tags[:4].tolist() == [3, 4, 6, 0]
        assert status[2:4].tolist() == [0, 512]
        torch.testing.assert_close(positions[2:4], in_positions)
        torch.testing.assert_close(velocities[2:4], in_velocities)
        assert rtag.tolist() == [3, -1, -1, 0, 1, -1, 2, -1]

    def test_append_capacity(self, device, dtype):
        positions = torch.zeros((2, 4), dtype=dtype, device=device)
        tags = torch.zeros(2, dtype=torch.int32, device=device)
        rtag = torch.full((4,), -1, dtype=torch.int32, device=device)
        inbound = make_records(2, dtype, device)
        in_tags = torch.tensor([2, 3], dtype=torch.int32, device=device)

        with pytest.raises(BufferCapacityError) as excinfo:
            append_particles(
                inbound,
                inbound,
                in_tags,
                torch.zeros_like(in_tags),
                1,
                MigrationFlag.ALL,
                positions,
                positions.clone(),
                tags,
                tags.clone(),
                rtag,
            )
        assert excinfo.value.capacity == 2
        assert excinfo.value.required == 3

    def test_append_dtype_mismatch(self, device):
        positions = torch.zeros((4, 4), dtype=torch.float64, device=device)
        tags = torch.zeros(4, dtype=torch.int32, device=device)
        inbound = torch.zeros((1, 4), dtype=torch.float32, device=device)
        in_tags = torch.zeros(1, dtype=torch.int32, device=device)
        rtag = torch.full((4,), -1, dtype=torch.int32, device=device)
        with pytest.raises(TypeError):
            append_particles(
                inbound,
                inbound,
                in_tags,
                in_tags.clone(),
                0,
                MigrationFlag.ALL,
                positions,
                positions.clone(),
                tags,
                tags.clone(),
                rtag,
            )
