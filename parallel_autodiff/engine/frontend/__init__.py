"""The engine frontend expands architecture templates into computation graphs.

Modules:
    architecture: Architecture templates and coordinates.
    bindings: Parameter binding table.
    builder: Graph construction.
    graph: Expanded computation graph.
"""

# SPDX-License-Identifier: Apache-2.0
