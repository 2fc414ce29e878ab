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
particleops
===========

Device-resident particle migration and distance constraint solving with
NVIDIA Warp kernels and PyTorch bindings.

Available Subpackages
---------------------

migration
    Classification, stable partitioning and double-buffered compaction of
    particle records.

constraints
    Constraint group table, constraint matrix assembly, dense to CSR
    conversion and sparse LU factorization.

torch
    PyTorch custom operators, `ParticleData`, `ConstraintData`,
    `SparseLUSolver` and `DistanceConstraintForce`.
"""

__version__ = "0.1.0"
