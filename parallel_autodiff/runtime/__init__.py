"""High-level entry points for running computation graphs."""

# SPDX-License-Identifier: Apache-2.0

from .engine import Engine

__all__ = ["Engine"]
