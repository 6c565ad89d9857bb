"""
SQL templates for the HealtheIntent (HDI) data warehouse.

Each function renders one common table expression body or clause. CTEs are
rendered as ``name AS (...)`` without separators; the generator joins them
into a single ``WITH`` list.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime


def quote(value: str) -> str:
    """Render a SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def comment(text: str | None, fallback: str) -> str:
    """Single-line SQL comment. Newlines in free text are flattened."""
    body = " ".join((text or fallback).split())
    return f"-- {body}"


def date_literal(day: date) -> str:
    return f"DATE '{day.isoformat()}'"


def cte(name: str, body: str) -> str:
    return f"{name} AS (\n{body}\n)"


def header(title: str | None, measure_id: str | None, generated_at: datetime) -> str:
    rule = "-- " + "=" * 60
    lines = [rule, f"-- HDI SQL for: {title or 'Untitled measure'}"]
    if measure_id:
        lines.append(f"-- Measure ID: {measure_id}")
    lines.append(f"-- Generated: {generated_at.isoformat(timespec='seconds')}")
    lines.append(rule)
    return "\n".join(lines)


# =============================================================================
# BASE CTEs
# =============================================================================


def ontology_cte(
    name: str,
    ontology_table: str,
    vocabularies: Sequence[str],
    concept_column: str = "concept_cki",
    code_column: str = "source_concept_identifier",
    vocabulary_column: str = "source_vocabulary_cd",
    display_column: str = "source_concept_display",
) -> str:
    vocab_list = ", ".join(quote(v) for v in vocabularies)
    body = (
        "  SELECT\n"
        f"    {concept_column},\n"
        f"    {vocabulary_column},\n"
        f"    {code_column},\n"
        f"    {display_column}\n"
        f"  FROM {ontology_table}\n"
        f"  WHERE {vocabulary_column} IN ({vocab_list})"
    )
    return cte(name, body)


def demographics_cte(name: str, patient_table: str, active_filter: str | None) -> str:
    body = (
        "  SELECT\n"
        "    p.person_id,\n"
        "    p.birth_date,\n"
        "    CASE p.sex_cd\n"
        "      WHEN 'M' THEN 'male'\n"
        "      WHEN 'F' THEN 'female'\n"
        "      ELSE 'unknown'\n"
        "    END AS gender,\n"
        "    p.race_cd,\n"
        "    p.ethnicity_cd,\n"
        "    p.death_date\n"
        f"  FROM {patient_table} p"
    )
    if active_filter:
        body += f"\n  WHERE {active_filter}"
    return cte(name, body)


# =============================================================================
# PREDICATE CTEs
# =============================================================================


def demographic_predicate(
    name: str,
    source: str,
    description: str | None,
    gender: str | None = None,
) -> str:
    """Gender equality when a gender is known; otherwise a documented pass-through."""
    lines = ["  SELECT person_id", f"  FROM {source}"]
    if gender:
        lines.append(f"  WHERE gender = {quote(gender)}")
    else:
        lines.append("  " + comment(description, "demographics predicate"))
    return cte(name, "\n".join(lines))


def value_set_filter(
    alias: str,
    code_column: str,
    value_set_table: str,
    oid: str | None,
) -> str:
    if not oid:
        return "-- value set codes to be added"
    return (
        f"AND {alias}.{code_column} IN "
        f"(SELECT code FROM {value_set_table} WHERE oid = {quote(oid)})"
    )


def vocabulary_filter(alias: str, vocabulary_column: str, vocabularies: Sequence[str]) -> str:
    vocab_list = ", ".join(quote(v) for v in vocabularies)
    return f"{alias}.{vocabulary_column} IN ({vocab_list})"


def date_window_filter(column: str, start: date, end: date) -> str:
    return f"AND {column} BETWEEN {date_literal(start)} AND {date_literal(end)}"


def number_literal(value: float) -> str:
    """Render a number without rounding. Whole values print as integers."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def value_range_filter(column: str, value_min: float | None, value_max: float | None) -> list[str]:
    filters = []
    if value_min is not None:
        filters.append(f"AND {column} >= {number_literal(value_min)}")
    if value_max is not None:
        filters.append(f"AND {column} <= {number_literal(value_max)}")
    return filters


def clinical_predicate(
    name: str,
    table: str,
    alias: str,
    concept_column: str,
    ontology: str,
    ontology_alias: str,
    ontology_concept_column: str,
    join_type: str,
    base_filter: str,
    extra_filters: Sequence[str],
    description: str | None,
    fallback: str,
) -> str:
    """Event-domain predicate: the domain table joined to the ontology CTE."""
    lines = [
        f"  SELECT DISTINCT {alias}.person_id",
        f"  FROM {table} {alias}",
        (
            f"  {join_type} JOIN {ontology} {ontology_alias} "
            f"ON {alias}.{concept_column} = {ontology_alias}.{ontology_concept_column}"
        ),
        f"  WHERE {base_filter}",
    ]
    lines.extend(f"  {line}" for line in extra_filters)
    lines.append("  " + comment(description, fallback))
    return cte(name, "\n".join(lines))


# =============================================================================
# POPULATION & FINAL SELECT
# =============================================================================


def join_clause(join_type: str, predicate: str, base_alias: str = "d") -> str:
    return f"{join_type} JOIN {predicate} ON {base_alias}.person_id = {predicate}.person_id"


def population_cte(
    name: str,
    source: str,
    joins: Sequence[str],
    where: str | None = None,
) -> str:
    lines = ["  SELECT DISTINCT d.person_id", f"  FROM {source} d"]
    lines.extend(f"  {join}" for join in joins)
    if where:
        lines.append(f"  WHERE {where}")
    return cte(name, "\n".join(lines))


def final_select(
    source: str,
    populations: Sequence[str],
    filters: Sequence[str],
) -> str:
    columns = ["d.person_id", "d.birth_date", "d.gender"]
    columns.extend(
        f"CASE WHEN {pop}.person_id IS NOT NULL THEN 1 ELSE 0 END AS in_{pop}"
        for pop in populations
    )
    lines = ["-- Final Result Set", "SELECT"]
    lines.append(",\n".join(f"  {column}" for column in columns))
    lines.append(f"FROM {source} d")
    lines.extend(join_clause("LEFT", pop) for pop in populations)
    lines.append("WHERE 1=1")
    lines.extend(f"  AND {condition}" for condition in filters)
    return "\n".join(lines) + ";"
