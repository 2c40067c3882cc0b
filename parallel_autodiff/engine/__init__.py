"""The execution engine builds, evaluates, and differentiates computation graphs.

Modules:
    atomic: Atomic counters and count-down latches.
    compileflags: Common definitions of flags influencing the engine.
    errors: Errors raised by the engine.
    frontend: Templates, bindings, and graph construction.
    numpybackend: NumPy-specific backend.
"""

# SPDX-License-Identifier: Apache-2.0
