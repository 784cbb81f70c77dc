"""
Org Migration Engine

Moves related records between orgs and flat-file directories.

Supports:
- Declarative migrations (export.json) with per-object operations
- Dependency-aware query, update and delete ordering
- Multi-pass retrieval and writes for forward, backward and cyclic references
- Validation and repair of flat input files
- Missing-parent and flat-file issue reports
"""

__version__ = "0.1.0"
