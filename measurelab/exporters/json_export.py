"""
JSON exporter for validation traces.

Exports traces and batch results as clean, human-readable JSON.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from measurelab.models import ValidationResults, ValidationTrace


def _export(
    model: BaseModel,
    output_path: Path | None,
    indent: int,
    include_nulls: bool,
) -> str:
    data = model.model_dump(mode="json", exclude_none=not include_nulls)
    json_str = json.dumps(data, indent=indent)

    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json_str)

    return json_str


def export_trace_json(
    trace: ValidationTrace,
    output_path: Path | None = None,
    indent: int = 2,
    include_nulls: bool = False,
) -> str:
    """
    Export one patient's validation trace to JSON.

    Args:
        trace: The trace to export
        output_path: Optional path to write the JSON file
        indent: JSON indentation level
        include_nulls: Whether to include null values in output

    Returns:
        JSON string representation of the trace
    """
    return _export(trace, output_path, indent, include_nulls)


def export_results_json(
    results: ValidationResults,
    output_path: Path | None = None,
    indent: int = 2,
    include_nulls: bool = False,
) -> str:
    """Export batch results (summary plus every trace) to JSON."""
    return _export(results, output_path, indent, include_nulls)


def export_trace_summary(trace: ValidationTrace) -> dict[str, Any]:
    """
    Export a summary of a trace (useful for listings/previews).

    Returns a dict with the outcome and per-population pass/fail.
    """
    return {
        "patient_id": trace.patient_id,
        "patient_name": trace.patient_name,
        "measure_id": trace.measure_id,
        "outcome": trace.final_outcome.value,
        "prechecks_passed": trace.prechecks_passed,
        "populations": {
            result.population_type.value: result.met
            for result in trace.population_results
        },
        "narrative": trace.narrative,
    }
