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

"""Mapping from PyTorch floating point dtypes to warp dtypes.

Particle records are stored as packed 4-wide records (three coordinates plus
one auxiliary scalar), so in addition to the scalar and mat33 lookups
this module provides the vec4 lookup used by the migration kernels.
"""

from __future__ import annotations

import torch
import warp as wp

__all__ = [
    "get_wp_dtype",
    "get_wp_vec4_dtype",
    "get_wp_mat_dtype",
]

_WP_DTYPES = {
    torch.float32: wp.float32,
    torch.float64: wp.float64,
}

_WP_VEC4_DTYPES = {
    torch.float32: wp.vec4f,
    torch.float64: wp.vec4d,
}

_WP_MAT_DTYPES = {
    torch.float32: wp.mat33f,
    torch.float64: wp.mat33d,
}


def _lookup(table: dict, dtype: torch.dtype, kind: str):
    try:
        return table[dtype]
    except KeyError:
        raise ValueError(
            f"Unsupported dtype {dtype} for {kind} conversion. "
            f"Supported dtypes: {list(table)}"
        ) from None


def get_wp_dtype(dtype: torch.dtype) -> type:
    """Get the warp scalar dtype matching a torch dtype.

    Parameters
    ----------
    dtype : torch.dtype
        ``torch.float32`` or ``torch.float64``.

    Returns
    -------
    type
        ``wp.float32`` or ``wp.float64``.

    Raises
    ------
    ValueError
        If the dtype is not a supported floating point type.
    """
    return _lookup(_WP_DTYPES, dtype, "scalar")


def get_wp_vec4_dtype(dtype: torch.dtype) -> type:
    """Get the warp vec4 dtype matching a torch dtype.

    Used for the packed position (``x, y, z, type``) and velocity
    (``vx, vy, vz, mass``) records.
    """
    return _lookup(_WP_VEC4_DTYPES, dtype, "vec4")


def get_wp_mat_dtype(dtype: torch.dtype) -> type:
    """Get the warp mat33 dtype matching a torch dtype."""
    return _lookup(_WP_MAT_DTYPES, dtype, "mat33")
