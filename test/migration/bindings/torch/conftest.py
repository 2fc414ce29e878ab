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

"""Shared pytest fixtures for torch migration binding tests."""

import pytest
import torch

# =============================================================================
# Device configuration
# =============================================================================

AVAILABLE_DEVICES = ["cpu"]
if torch.cuda.is_available():
    AVAILABLE_DEVICES.append("cuda:0")


# =============================================================================
# Core fixtures - device and dtype
# =============================================================================


@pytest.fixture(params=AVAILABLE_DEVICES, ids=lambda d: d.replace(":", "_"))
def device(request):
    """Fixture providing test devices (cpu, cuda:0 if available).

    Returns
    -------
    str
        Device string for torch tensors
    """
    return request.param


@pytest.fixture(params=[torch.float32, torch.float64], ids=["float32", "float64"])
def dtype(request):
    """Fixture providing torch dtypes for testing.

    Returns
    -------
    torch.dtype
        The torch dtype (float32 or float64)
    """
    return request.param
