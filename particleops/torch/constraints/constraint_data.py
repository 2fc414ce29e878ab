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

"""Distance constraint definitions with a topology version counter."""

from __future__ import annotations

import torch

__all__ = ["ConstraintData"]


class ConstraintData:
    """Pairwise distance constraints between particle tags.

    Constraint ``n`` fixes the distance between particles ``members[n, 0]``
    ("a") and ``members[n, 1]`` ("b") to ``distances[n]``.

    Every change of the constraint set increments `topology_version`.
    Consumers that cache data derived from the constraint graph compare the
    version they cached against the current one instead of being notified.
    Removing a constraint and adding it back therefore counts as two changes.

    Parameters
    ----------
    device : str or torch.device, default "cpu"
        Device of the members and distances tensors.

    Examples
    --------
    >>> constraints = ConstraintData()
    >>> constraints.add_constraint(0, 1, 1.0)
    0
    >>> constraints.topology_version
    1
    """

    def __init__(self, device: str | torch.device = "cpu"):
        self._device = torch.device(device)
        self._members = torch.zeros((0, 2), dtype=torch.int32, device=self._device)
        self._distances = torch.zeros(0, dtype=torch.float64, device=self._device)
        self.topology_version = 0

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def num_constraints(self) -> int:
        return self._members.shape[0]

    @property
    def members(self) -> torch.Tensor:
        """Tags of the members, shape (num_constraints, 2), int32."""
        return self._members

    @property
    def distances(self) -> torch.Tensor:
        """Target distances, shape (num_constraints,), float64."""
        return self._distances

    @property
    def num_dof_removed(self) -> int:
        """Degrees of freedom removed from the system, one per constraint."""
        return self.num_constraints

    def add_constraint(self, tag_a: int, tag_b: int, distance: float) -> int:
        """Add a constraint and return its index.

        Raises
        ------
        ValueError
            If both members are the same particle or the distance is not
            positive.
        """
        _validate(torch.tensor([[tag_a, tag_b]]), torch.tensor([distance]))
        member = torch.tensor([[tag_a, tag_b]], dtype=torch.int32, device=self._device)
        distance_t = torch.tensor([distance], dtype=torch.float64, device=self._device)
        self._members = torch.cat([self._members, member])
        self._distances = torch.cat([self._distances, distance_t])
        self.topology_version += 1
        return self.num_constraints - 1

    def remove_constraint(self, index: int) -> None:
        """Remove constraint ``index``; later constraints shift down by one."""
        if not 0 <= index < self.num_constraints:
            raise IndexError(
                f"Constraint index {index} out of range [0, {self.num_constraints})"
            )
        keep = torch.ones(self.num_constraints, dtype=torch.bool, device=self._device)
        keep[index] = False
        self._members = self._members[keep]
        self._distances = self._distances[keep]
        self.topology_version += 1

    def set_constraints(self, members: torch.Tensor, distances: torch.Tensor) -> None:
        """Replace all constraints.

        Parameters
        ----------
        members : torch.Tensor, shape (num_constraints, 2)
            Member tags.
        distances : torch.Tensor, shape (num_constraints,)
            Target distances.
        """
        members = torch.as_tensor(members)
        distances = torch.as_tensor(distances)
        if members.ndim != 2 or members.shape[1] != 2:
            raise ValueError(
                f"members must have shape (num_constraints, 2), got {tuple(members.shape)}"
            )
        if distances.shape != (members.shape[0],):
            raise ValueError(
                f"distances must have shape ({members.shape[0]},), "
                f"got {tuple(distances.shape)}"
            )
        _validate(members, distances)
        self._members = members.to(self._device, torch.int32).contiguous()
        self._distances = distances.to(self._device, torch.float64).contiguous()
        self.topology_version += 1


def _validate(members: torch.Tensor, distances: torch.Tensor) -> None:
    if members.numel() == 0:
        return
    if bool((members[:, 0] == members[:, 1]).any()):
        raise ValueError("A constraint cannot have duplicate tags")
    if bool((members < 0).any()):
        raise ValueError("Constraint member tags must be non-negative")
    if not bool((distances > 0).all()):
        raise ValueError("Constraint distances must be positive")
