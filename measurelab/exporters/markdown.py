"""
Markdown exporter for validation traces.

Exports traces as human-readable review documents.
"""

from __future__ import annotations

from pathlib import Path

from measurelab.models import (
    Outcome,
    PopulationType,
    ValidationNode,
    ValidationResults,
    ValidationTrace,
)


def export_trace_markdown(
    trace: ValidationTrace,
    output_path: Path | None = None,
    include_facts: bool = True,
) -> str:
    """
    Export a validation trace to Markdown format.

    Args:
        trace: The trace to export
        output_path: Optional path to write the Markdown file
        include_facts: Whether to list the evidence under each criterion

    Returns:
        Markdown string representation of the trace
    """
    lines = _trace_lines(trace, include_facts, heading="#")

    md_str = "\n".join(lines)
    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(md_str)
    return md_str


def export_results_markdown(
    results: ValidationResults,
    output_path: Path | None = None,
    include_facts: bool = False,
) -> str:
    """Export batch results: a summary table, then one section per patient."""
    s = results.summary
    lines = []
    lines.append(f"# Validation Results: {results.measure_title or results.measure_id or 'Measure'}")
    lines.append("")
    lines.append("| Total | In Population | Numerator | Excluded | Not in Numerator | Performance |")
    lines.append("|-------|---------------|-----------|----------|------------------|-------------|")
    lines.append(
        f"| {s.total} | {s.in_population} | {s.in_numerator} | {s.excluded} "
        f"| {s.not_in_numerator} | {s.performance_rate:.1f}% |"
    )
    lines.append("")

    for trace in results.traces:
        lines.extend(_trace_lines(trace, include_facts, heading="##"))
        lines.append("")

    md_str = "\n".join(lines)
    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(md_str)
    return md_str


def _trace_lines(trace: ValidationTrace, include_facts: bool, heading: str) -> list[str]:
    lines = []
    lines.append(f"{heading} Validation Trace: {trace.patient_name}")
    lines.append("")
    lines.append(f"**Patient ID:** {trace.patient_id}")
    if trace.measure_id or trace.measure_title:
        lines.append(f"**Measure:** {trace.measure_title or ''} {_paren(trace.measure_id)}".rstrip())
    lines.append(f"**Outcome:** {_format_outcome(trace.final_outcome)}")
    lines.append("")
    lines.append(f"> {trace.narrative}")
    lines.append("")

    # Prechecks
    lines.append(f"{heading}# Prechecks")
    lines.append("")
    for check in trace.pre_check_results:
        lines.append(f"- {_mark(check.met)} **{check.check_type.title()}:** {check.description}")
    lines.append("")

    # Populations
    lines.append(f"{heading}# Populations")
    lines.append("")
    for result in trace.population_results:
        suffix = "" if result.evaluated else " *(not evaluated)*"
        lines.append(
            f"- {_mark(result.met)} **{_format_population(result.population_type)}**{suffix}"
        )
        for node in result.nodes:
            lines.extend(_node_lines(node, depth=1, include_facts=include_facts))
    lines.append("")
    return lines


def _node_lines(node: ValidationNode, depth: int, include_facts: bool) -> list[str]:
    indent = "  " * depth
    lines = [f"{indent}- {_mark(node.passed)} {node.title}"]
    if include_facts:
        for fact in node.facts:
            date_str = f" ({fact.date})" if fact.date else ""
            lines.append(f"{indent}  - *{fact.source}:* {fact.display}{date_str}")
    for child in node.children:
        lines.extend(_node_lines(child, depth + 1, include_facts))
    return lines


def _mark(met: bool) -> str:
    return "[x]" if met else "[ ]"


def _paren(text: str | None) -> str:
    return f"({text})" if text else ""


def _format_outcome(outcome: Outcome) -> str:
    """Format an outcome for display."""
    names = {
        Outcome.IN_NUMERATOR: "In Numerator",
        Outcome.NOT_IN_NUMERATOR: "Not in Numerator",
        Outcome.EXCLUDED: "Excluded",
        Outcome.NOT_IN_POPULATION: "Not in Population",
    }
    return names.get(outcome, outcome.value.replace("_", " ").title())


def _format_population(population_type: PopulationType) -> str:
    return population_type.value.replace("_", " ").title()
