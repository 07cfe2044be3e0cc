"""Rendering package for lbnet CLI output."""

from lbnet.rendering.status_renderer import (
    build_status_output,
    render_allocator_table,
    show_allocator_status,
    show_prewarm_results,
    show_reconstruction,
    show_replica_states,
    usage_bar,
)

__all__ = [
    "build_status_output",
    "render_allocator_table",
    "show_allocator_status",
    "show_prewarm_results",
    "show_reconstruction",
    "show_replica_states",
    "usage_bar",
]
