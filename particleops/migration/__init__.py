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

"""
Particle Migration
==================

Core warp kernels and launchers that move particle records between the
local arrays of a domain and packed transfer buffers.

Available Submodules
--------------------

flags
    Keep/remove classification from a status bitmask and the staging kernel
    that sets direction bits for particles outside the local domain.

partition
    Stable two-way partition computed with exclusive prefix sums.

compaction
    Double-buffered removal into an outbound buffer, appending of inbound
    elements, and maintenance of the tag -> index lookup table.
"""

from .compaction import (
    BufferCapacityError,
    append_particles,
    rebuild_rtags,
    remove_particles,
)
from .flags import (
    NOT_LOCAL,
    MigrationFlag,
    classify_particles,
    flag_migrating_particles,
)
from .partition import partition_particles

__all__ = [
    # Flags
    "MigrationFlag",
    "NOT_LOCAL",
    "classify_particles",
    "flag_migrating_particles",
    # Partition
    "partition_particles",
    # Compaction
    "BufferCapacityError",
    "remove_particles",
    "append_particles",
    "rebuild_rtags",
]
