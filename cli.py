#!/usr/bin/env python3
"""
measurelab CLI

Command-line interface for validating clinical quality measures against
test patients and generating warehouse SQL from them.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.tree import Tree

console = Console()


def setup_paths():
    """Add the project root to sys.path for imports."""
    root = Path(__file__).parent
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


setup_paths()


def setup_logging(verbose: bool):
    """Route library logging through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def fail(message: str):
    console.print(f"[red]{escape(message)}[/red]")
    sys.exit(1)


OUTCOME_STYLES = {
    "in_numerator": "green",
    "not_in_numerator": "yellow",
    "excluded": "magenta",
    "not_in_population": "dim",
}


@click.group()
@click.version_option(version="0.1.0", prog_name="measurelab")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """
    measurelab - Clinical Quality Measure Criteria Engine

    Evaluate measure criteria trees against test patients with a full
    explanation trace, and compile them into HealtheIntent SQL.
    """
    setup_logging(verbose)


@cli.command()
@click.argument("measure_file", type=click.Path(exists=True))
@click.argument("patients_file", type=click.Path(exists=True))
@click.option("--patient", "patient_id", type=str, help="Evaluate only the patient with this id")
@click.option("--format", "fmt", type=click.Choice(["table", "json", "markdown"]), default="table",
              help="Output format")
@click.option("--output", "-o", type=click.Path(), help="Write the report to a file")
@click.option("--workers", type=int, default=1, help="Evaluate patients on N threads")
@click.option("--select/--no-select", default=False,
              help="Keep only patients relevant to the measure's gender requirement")
def evaluate(
    measure_file: str,
    patients_file: str,
    patient_id: Optional[str],
    fmt: str,
    output: Optional[str],
    workers: int,
    select: bool,
):
    """
    Evaluate test patients against a measure.

    Example:

        measurelab evaluate measure.yaml patients.yaml --format markdown
    """
    from measurelab.engines import PopulationPipeline, select_patients_for_measure
    from measurelab.errors import MeasureLabError
    from measurelab.exporters import export_results_json, export_results_markdown
    from measurelab.loaders import load_measure, load_patients

    try:
        measure = load_measure(measure_file)
        patients = load_patients(patients_file)
    except (MeasureLabError, ValidationError) as e:
        fail(f"Error: {e}")

    if patient_id:
        patients = [p for p in patients if p.id == patient_id]
        if not patients:
            fail(f"No patient with id {patient_id} in {patients_file}")
    if select:
        patients = select_patients_for_measure(measure, patients)

    try:
        pipeline = PopulationPipeline()
    except ValueError as e:
        fail(f"Error: {e}")

    try:
        if fmt == "table":
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task(f"Evaluating {len(patients)} patients...", total=None)
                results = pipeline.evaluate_all(measure, patients, max_workers=workers)
        else:
            results = pipeline.evaluate_all(measure, patients, max_workers=workers)
    except MeasureLabError as e:
        fail(f"Error: {e}")

    out_path = Path(output) if output else None

    if fmt == "json":
        text = export_results_json(results, out_path)
    elif fmt == "markdown":
        text = export_results_markdown(results, out_path, include_facts=True)
    else:
        _print_results_table(results)
        return

    if out_path:
        console.print(f"[green]✓ Exported to {out_path}[/green]")
    else:
        click.echo(text)


def _print_results_table(results):
    table = Table(title=f"Validation: {results.measure_title or results.measure_id or 'Measure'}")
    table.add_column("Patient", style="cyan")
    table.add_column("Gender")
    table.add_column("Outcome")
    table.add_column("Narrative")

    for trace in results.traces:
        outcome = trace.final_outcome.value
        style = OUTCOME_STYLES.get(outcome, "white")
        table.add_row(
            trace.patient_name,
            trace.patient_gender or "-",
            f"[{style}]{outcome}[/{style}]",
            trace.narrative,
        )
    console.print(table)

    s = results.summary
    console.print()
    console.print(Panel(
        f"Total: {s.total}\n"
        f"In population: {s.in_population}\n"
        f"Numerator: {s.in_numerator}\n"
        f"Excluded: {s.excluded}\n"
        f"Not in numerator: {s.not_in_numerator}\n"
        f"[bold]Performance rate: {s.performance_rate:.1f}%[/bold]",
        title="Summary",
        border_style="blue",
    ))


@cli.command()
@click.argument("measure_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Output file path")
@click.option("--join-strategy", type=click.Choice(["legacy", "semantic"]),
              help="How population CTEs join their predicates")
def sql(measure_file: str, output: Optional[str], join_strategy: Optional[str]):
    """
    Generate HealtheIntent SQL for a measure.

    Example:

        measurelab sql measure.yaml -o measure.sql
    """
    from measurelab.config import EngineConfig
    from measurelab.engines import QueryGenerator
    from measurelab.errors import MeasureLabError
    from measurelab.loaders import load_measure

    try:
        measure = load_measure(measure_file)
    except (MeasureLabError, ValidationError) as e:
        fail(f"Error: {e}")

    try:
        config = EngineConfig(join_strategy=join_strategy)
    except ValueError as e:
        fail(f"Error: {e}")

    text = QueryGenerator(config).generate(measure)

    if output:
        out_path = Path(output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text)
        console.print(f"[green]✓ Exported to {out_path}[/green]")
    else:
        click.echo(text)


@cli.command()
@click.argument("measure_file", type=click.Path(exists=True))
def inspect(measure_file: str):
    """
    Show a measure's populations and criteria tree.

    Example:

        measurelab inspect measure.yaml
    """
    from measurelab.engines import detect_required_gender
    from measurelab.errors import MeasureLabError
    from measurelab.loaders import load_measure

    try:
        measure = load_measure(measure_file)
    except (MeasureLabError, ValidationError) as e:
        fail(f"Error: {e}")

    gc = measure.global_constraints
    period = measure.measurement_period
    required_gender = detect_required_gender(measure)
    period_str = f"{period.start} to {period.end}" if period else "calendar year of evaluation"
    console.print()
    console.print(Panel(
        f"[bold]{measure.title or 'Untitled measure'}[/bold]\n"
        f"ID: {measure.measure_id or measure.id}\n"
        f"Period: {period_str}\n"
        f"Age: {gc.age_min if gc.age_min is not None else '-'} to "
        f"{gc.age_max if gc.age_max is not None else '-'} ({gc.age_calculation.value})\n"
        f"Gender: {required_gender.value if required_gender else 'any'}",
        title="Measure",
        border_style="blue",
    ))

    tree = Tree("[bold]Populations[/bold]")
    for population in measure.populations:
        branch = tree.add(f"[cyan]{population.population_type.value}[/cyan]"
                          + (f" - {population.description}" if population.description else ""))
        if population.root_clause is None:
            branch.add("[dim]no criteria[/dim]")
        else:
            _add_clause(branch, population.root_clause)
    console.print(tree)


def _add_clause(branch, clause):
    node = branch.add(f"[bold]{clause.operator.value}[/bold]"
                      + (f" {clause.description}" if clause.description else ""))
    for element in clause.elements:
        label = f"{element.element_type.value}: {element.description or element.id}"
        if element.negation:
            label = f"[red]NOT[/red] {label}"
        if element.value_set_oid:
            label += f" [dim]({element.value_set_oid})[/dim]"
        node.add(label)
    for child in clause.children:
        _add_clause(node, child)


@cli.command()
def info():
    """
    Show information about measurelab.
    """
    from measurelab.config import get_config

    try:
        config = get_config()
    except ValueError as e:
        fail(f"Error: {e}")

    console.print(Panel(
        "[bold]measurelab[/bold]\n\n"
        "A criteria tree engine for clinical quality measures:\n"
        "• Evaluate test patients with a pass/fail explanation trace\n"
        "• Compile criteria trees into HealtheIntent SQL\n\n"
        "[dim]Measures and patients are read from YAML or JSON files.[/dim]",
        title="About",
        border_style="blue",
    ))

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Warehouse schema", config.warehouse_schema)
    table.add_row("Ontology table", config.ontology_table)
    table.add_row("Join strategy", config.join_strategy)
    table.add_row("NOT semantics", config.not_semantics)
    table.add_row("Code matching", str(config.code_matching))
    table.add_row("Min word length", str(config.min_word_length))
    console.print(table)

    console.print("\n[bold]Quick Start:[/bold]")
    console.print("  measurelab inspect knowledge/samples/cms124.yaml")
    console.print("  measurelab evaluate knowledge/samples/cms124.yaml knowledge/samples/patients.yaml")
    console.print("  measurelab sql knowledge/samples/cms124.yaml -o cms124.sql")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
