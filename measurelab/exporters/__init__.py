"""
Export functionality for measurelab.
"""

from .json_export import export_results_json, export_trace_json, export_trace_summary
from .markdown import export_results_markdown, export_trace_markdown

__all__ = [
    "export_trace_json",
    "export_results_json",
    "export_trace_summary",
    "export_trace_markdown",
    "export_results_markdown",
]
