"""The NumPy backend runs computation graphs forward and backward.

Modules:
    backward: Sequential and concurrent backward visitor.
    dependencies: Dependency-count compiler.
    executor: Forward executor.
    operators: Reference NumPy primitives.
    primitive: Primitive protocol and operator libraries.
    snapshot: Intermediate store/restore.
"""

# SPDX-License-Identifier: Apache-2.0
