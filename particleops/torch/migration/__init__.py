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
PyTorch Bindings for Particle Migration
=======================================

Custom operators for staging, classifying, partitioning, compacting and
appending particle records, and the double-buffered `ParticleData` arena.
"""

from .compaction import append_particles, rebuild_rtags, remove_particles
from .particle_data import ParticleArrays, ParticleData, TransferBuffer
from .partition import (
    classify_particles,
    flag_migrating_particles,
    partition_particles,
)

__all__ = [
    "flag_migrating_particles",
    "classify_particles",
    "partition_particles",
    "remove_particles",
    "append_particles",
    "rebuild_rtags",
    "ParticleArrays",
    "TransferBuffer",
    "ParticleData",
]
