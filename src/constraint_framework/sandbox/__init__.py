"""Sandboxed rule modules: static policy checks plus a restricted runtime."""

from constraint_framework.sandbox.policy import (
    AssembledModule,
    SourceSegment,
    assemble_module,
    check_module,
    check_source,
    top_level_names,
)
from constraint_framework.sandbox.runtime import (
    LoadedModule,
    freeze,
    load_module,
    render_preamble,
    thaw,
)

__all__ = [
    "AssembledModule",
    "LoadedModule",
    "SourceSegment",
    "assemble_module",
    "check_module",
    "check_source",
    "freeze",
    "load_module",
    "render_preamble",
    "thaw",
    "top_level_names",
]
