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

"""Double-buffered particle storage with stable tag lookup.

`ParticleData` owns two fixed-capacity sets of particle arrays. One of them
is active at any time; compaction reads the active set, writes the kept
particles into the other one and flips the selector. Consumers always go
through the properties, which resolve the active set on every access, so a
reference to a raw buffer is never carried across a compaction.

Particle indices change on every compaction or append. Stable references
use the particle tag and `ParticleData.index_of`.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

import torch
from loguru import logger

from particleops.migration.flags import MigrationFlag
from particleops.torch.migration.compaction import (
    append_particles,
    rebuild_rtags,
    remove_particles,
)
from particleops.torch.migration.partition import (
    classify_particles,
    flag_migrating_particles,
    partition_particles,
)

__all__ = [
    "ParticleArrays",
    "TransferBuffer",
    "ParticleData",
]


@dataclass
class ParticleArrays:
    """Structure-of-arrays particle records.

    Attributes
    ----------
    positions : torch.Tensor, shape (n, 4)
        ``(x, y, z, type)`` per particle.
    velocities : torch.Tensor, shape (n, 4)
        ``(vx, vy, vz, mass)`` per particle.
    tags : torch.Tensor, shape (n,), dtype=int32
        Immutable particle identities.
    status : torch.Tensor, shape (n,), dtype=int32
        Pending migration flags.
    """

    positions: torch.Tensor
    velocities: torch.Tensor
    tags: torch.Tensor
    status: torch.Tensor

    @classmethod
    def allocate(
        cls,
        size: int,
        dtype: torch.dtype,
        device: str | torch.device,
    ) -> ParticleArrays:
        """Allocate zero-initialized arrays for ``size`` particles."""
        return cls(
            positions=torch.zeros((size, 4), dtype=dtype, device=device),
            velocities=torch.zeros((size, 4), dtype=dtype, device=device),
            tags=torch.zeros(size, dtype=torch.int32, device=device),
            status=torch.zeros(size, dtype=torch.int32, device=device),
        )

    def __len__(self) -> int:
        return self.tags.shape[0]

    def narrow(self, size: int) -> ParticleArrays:
        """Views of the first ``size`` records."""
        return ParticleArrays(
            positions=self.positions[:size],
            velocities=self.velocities[:size],
            tags=self.tags[:size],
            status=self.status[:size],
        )


class TransferBuffer(ParticleArrays):
    """Packed transfer elements shipped to or received from a neighbor.

    Each element is self-contained (position, velocity, tag, status) and
    does not refer to any local index.
    """


class ParticleData:
    """Local particle records of one domain.

    Parameters
    ----------
    capacity : int
        Initial number of records each of the two buffers can hold.
    num_global : int
        Total number of particles in the simulation; tags are in
        ``[0, num_global)``.
    dtype : torch.dtype, default torch.float64
        Working precision of positions and velocities.
    device : str or torch.device, default "cpu"
        Storage device.
    growth_factor : float, default 1.125
        Factor by which capacity grows when an append does not fit.

    Attributes
    ----------
    rtag : torch.Tensor, shape (num_global,), dtype=int32
        Tag -> local index lookup, -1 for tags that are not local.
    layout_version : int
        Incremented whenever particle indices may have changed.

    Examples
    --------
    >>> data = ParticleData(capacity=5, num_global=5)
    >>> data.initialize(positions, velocities, torch.arange(5, dtype=torch.int32))
    >>> data.status[1:3] = MigrationFlag.EAST
    >>> outbound = data.remove_particles(MigrationFlag.EAST)
    >>> data.tags.tolist(), outbound.tags.tolist()
    ([0, 3, 4], [1, 2])
    """

    def __init__(
        self,
        capacity: int,
        num_global: int,
        dtype: torch.dtype = torch.float64,
        device: str | torch.device = "cpu",
        growth_factor: float = 1.125,
    ):
        if capacity < 0:
            raise ValueError(f"capacity must be non-negative, got {capacity}")
        if num_global < 0:
            raise ValueError(f"num_global must be non-negative, got {num_global}")
        if growth_factor <= 1.0:
            raise ValueError(f"growth_factor must be > 1, got {growth_factor}")
        if dtype not in (torch.float32, torch.float64):
            raise ValueError(f"Unsupported dtype {dtype}")

        self._dtype = dtype
        self._device = torch.device(device)
        self._growth_factor = growth_factor
        self._buffers = [
            ParticleArrays.allocate(capacity, dtype, self._device),
            ParticleArrays.allocate(capacity, dtype, self._device),
        ]
        self._active = 0
        self._num_particles = 0
        self.rtag = torch.full(
            (num_global,), -1, dtype=torch.int32, device=self._device
        )
        self.layout_version = 0

    # ------------------------------------------------------------------
    # Views through the active selector
    # ------------------------------------------------------------------

    @property
    def num_particles(self) -> int:
        return self._num_particles

    @property
    def num_global(self) -> int:
        return self.rtag.shape[0]

    @property
    def capacity(self) -> int:
        return len(self._buffers[self._active])

    @property
    def dtype(self) -> torch.dtype:
        return self._dtype

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def active(self) -> ParticleArrays:
        """The active records, narrowed to the local particle count."""
        return self._buffers[self._active].narrow(self._num_particles)

    @property
    def positions(self) -> torch.Tensor:
        return self._buffers[self._active].positions[: self._num_particles]

    @property
    def velocities(self) -> torch.Tensor:
        return self._buffers[self._active].velocities[: self._num_particles]

    @property
    def tags(self) -> torch.Tensor:
        return self._buffers[self._active].tags[: self._num_particles]

    @property
    def status(self) -> torch.Tensor:
        return self._buffers[self._active].status[: self._num_particles]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def reserve(self, capacity: int) -> None:
        """Grow both buffers to hold at least ``capacity`` records.

        Existing records keep their indices.
        """
        if capacity <= self.capacity:
            return
        new_capacity = max(capacity, math.ceil(self.capacity * self._growth_factor))
        logger.debug(
            "Growing particle buffers from {} to {}", self.capacity, new_capacity
        )

        buffers = [
            ParticleArrays.allocate(new_capacity, self._dtype, self._device),
            ParticleArrays.allocate(new_capacity, self._dtype, self._device),
        ]
        n = self._num_particles
        old = self._buffers[self._active]
        new = buffers[self._active]
        new.positions[:n] = old.positions[:n]
        new.velocities[:n] = old.velocities[:n]
        new.tags[:n] = old.tags[:n]
        new.status[:n] = old.status[:n]
        self._buffers = buffers

    def initialize(
        self,
        positions: torch.Tensor,
        velocities: torch.Tensor,
        tags: torch.Tensor,
        status: torch.Tensor | None = None,
    ) -> None:
        """Replace the local particles.

        Parameters
        ----------
        positions : torch.Tensor, shape (n, 4)
            ``(x, y, z, type)`` per particle.
        velocities : torch.Tensor, shape (n, 4)
            ``(vx, vy, vz, mass)`` per particle.
        tags : torch.Tensor, shape (n,)
            Unique tags in ``[0, num_global)``.
        status : torch.Tensor, shape (n,), optional
            Initial status words, zero when omitted.

        Raises
        ------
        ValueError
            On mismatched shapes, duplicate tags or tags out of range.
        """
        n = tags.shape[0]
        if positions.shape != (n, 4) or velocities.shape != (n, 4):
            raise ValueError(
                f"positions and velocities must have shape ({n}, 4), got "
                f"{tuple(positions.shape)} and {tuple(velocities.shape)}"
            )
        if status is not None and status.shape != (n,):
            raise ValueError(f"status must have shape ({n},), got {tuple(status.shape)}")
        if n > 0:
            if int(tags.min()) < 0 or int(tags.max()) >= self.num_global:
                raise ValueError(f"tags must be in range [0, {self.num_global})")
            if torch.unique(tags).shape[0] != n:
                raise ValueError("tags must be unique")

        self.reserve(n)
        buffer = self._buffers[self._active]
        buffer.positions[:n] = positions.to(self._device, self._dtype)
        buffer.velocities[:n] = velocities.to(self._device, self._dtype)
        buffer.tags[:n] = tags.to(self._device, torch.int32)
        if status is None:
            buffer.status[:n] = 0
        else:
            buffer.status[:n] = status.to(self._device, torch.int32)
        self._num_particles = n

        rebuild_rtags(self.tags, self.rtag)
        self.layout_version += 1

    def remove_particles(self, mask: int) -> TransferBuffer:
        """Remove every particle whose status intersects ``mask``.

        Kept particles are compacted, in order, into the alternate buffer
        which then becomes active. Removed particles are returned, in order,
        as a transfer buffer.

        Parameters
        ----------
        mask : int
            Status bits that mark a particle for removal.

        Returns
        -------
        TransferBuffer
            The removed particles.
        """
        n = self._num_particles
        active = self.active
        keep_flags, remove_flags, identity = classify_particles(active.status, mask)
        permutation, num_keep = partition_particles(keep_flags, remove_flags, identity)
        num_kept = int(num_keep.item())

        outbound = TransferBuffer.allocate(n - num_kept, self._dtype, self._device)
        alternate = self._buffers[1 - self._active]
        remove_particles(
            active.positions,
            active.velocities,
            active.tags,
            active.status,
            permutation,
            num_keep,
            alternate.positions,
            alternate.velocities,
            alternate.tags,
            alternate.status,
            outbound.positions,
            outbound.velocities,
            outbound.tags,
            outbound.status,
            self.rtag,
        )

        self._active = 1 - self._active
        self._num_particles = num_kept
        self.layout_version += 1
        logger.debug("Removed {} of {} particles", n - num_kept, n)
        return outbound

    def add_particles(
        self,
        buffer: ParticleArrays,
        migration_mask: int = MigrationFlag.ALL,
    ) -> None:
        """Append received particles behind the local ones.

        Parameters
        ----------
        buffer : ParticleArrays
            Inbound transfer elements.
        migration_mask : int, default MigrationFlag.ALL
            Status bits cleared on arrival.

        Raises
        ------
        ValueError
            If an inbound tag is out of range or already local.
        """
        num_inbound = len(buffer)
        if num_inbound == 0:
            return

        tags = buffer.tags.to(self._device)
        if int(tags.min()) < 0 or int(tags.max()) >= self.num_global:
            raise ValueError(f"tags must be in range [0, {self.num_global})")
        if torch.unique(tags).shape[0] != num_inbound:
            raise ValueError("Inbound particles contain duplicate tags")
        if bool((self.rtag[tags.long()] != -1).any()):
            raise ValueError("Inbound particles contain tags that are already local")

        n = self._num_particles
        self.reserve(n + num_inbound)
        active = self._buffers[self._active]
        self._num_particles = append_particles(
            buffer.positions.to(self._device, self._dtype),
            buffer.velocities.to(self._device, self._dtype),
            tags,
            buffer.status.to(self._device),
            n,
            int(migration_mask),
            active.positions,
            active.velocities,
            active.tags,
            active.status,
            self.rtag,
        )
        self.layout_version += 1
        logger.debug("Appended {} particles, {} local", num_inbound, self._num_particles)

    def migrate(
        self,
        box_lo: Sequence[float],
        box_hi: Sequence[float],
        mask: int = MigrationFlag.ALL,
    ) -> TransferBuffer:
        """Flag particles outside ``[box_lo, box_hi)`` and remove them.

        Returns the outbound buffer; exchanging it with the neighboring
        domains is up to the caller.
        """
        flag_migrating_particles(self.positions, box_lo, box_hi, self.status)
        return self.remove_particles(mask)

    def index_of(self, tags: torch.Tensor | Sequence[int]) -> torch.Tensor:
        """Current local indices of ``tags``, -1 for tags that are not local."""
        tags = torch.as_tensor(tags, device=self._device).long()
        return self.rtag[tags]
