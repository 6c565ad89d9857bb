"""
Query code generator.

Compiles a measure's criteria trees into HDI SQL: one predicate CTE per
distinct element, one CTE per population joining the predicates it uses,
and a final select flagging each patient's population membership.

The generator never looks at patients. Given a fixed ``generated_at`` the
output is a pure function of the measure and the configuration.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from knowledge.warehouse import read_warehouse_schema
from measurelab.config import EngineConfig, get_config
from measurelab.engines import sql_templates as tpl
from measurelab.engines.timing import resolve_timing_window
from measurelab.models import (
    Clause,
    Element,
    ElementType,
    LogicalOperator,
    Measure,
    MeasurementPeriod,
    Population,
)

logger = logging.getLogger(__name__)

NAME_LIMIT = 40
KEY_LENGTH = 8
ONTOLOGY_ROW_ALIAS = "o"


# =============================================================================
# PLAN
# =============================================================================


class PredicateFragment(BaseModel):
    """One predicate CTE, shared by every element with the same structure."""
    name: str
    key: str
    element_id: str
    element_type: ElementType
    sql: str


class PopulationFragment(BaseModel):
    """One population CTE."""
    name: str
    population_type: str
    predicates: list[str] = Field(default_factory=list)
    sql: str


class QueryPlan(BaseModel):
    """Everything the generator produced for a measure, before rendering."""
    header: str
    base_ctes: list[str] = Field(default_factory=list)
    predicates: list[PredicateFragment] = Field(default_factory=list)
    populations: list[PopulationFragment] = Field(default_factory=list)
    final_select: str

    def predicate(self, name: str) -> PredicateFragment | None:
        for fragment in self.predicates:
            if fragment.name == name:
                return fragment
        return None

    def render(self) -> str:
        ctes = list(self.base_ctes)
        ctes.extend(fragment.sql for fragment in self.predicates)
        for idx, fragment in enumerate(self.populations):
            prefix = "-- Population CTEs\n" if idx == 0 else ""
            ctes.append(prefix + fragment.sql)
        cte_sql = ",\n\n".join(ctes)
        return f"{self.header}\n\nWITH {cte_sql}\n\n{self.final_select}\n"


# =============================================================================
# PREDICATE NAMING
# =============================================================================


def _normalize_description(description: str | None) -> str:
    return " ".join((description or "").lower().split())


def predicate_key(element: Element) -> str:
    """
    Stable structural key for an element.

    Two elements share a predicate only when type, description, value sets,
    timing, negation, thresholds and gender all agree.
    """
    thresholds = element.thresholds.model_dump_json() if element.thresholds else ""
    timing = element.timing.model_dump_json() if element.timing else ""
    parts = [
        element.element_type.value,
        _normalize_description(element.description),
        ",".join(element.value_set_oids),
        timing,
        element.timing_override or "",
        "negated" if element.negation else "",
        thresholds,
        element.gender.value if element.gender else "",
    ]
    digest = hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:KEY_LENGTH]


def sanitize_identifier(text: str) -> str:
    ident = re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
    return ident[:NAME_LIMIT].rstrip("_")


def predicate_name(element: Element) -> str:
    """``pred_<description>_<key>``, falling back to the element id."""
    stem = sanitize_identifier(element.description or "") or sanitize_identifier(element.id)
    return f"pred_{stem}_{predicate_key(element)}"


# =============================================================================
# GENERATOR
# =============================================================================


class QueryGenerator:
    """
    Generates HDI SQL for a measure.

    Usage:
        generator = QueryGenerator()
        sql = generator.generate(measure)
    """

    # Class-level cache for the warehouse schema map
    _schema_cache: dict | None = None

    @classmethod
    def _load_schema(cls, schema_path: Path | None = None) -> dict:
        """Load the warehouse schema from YAML, with caching."""
        if schema_path is not None:
            return read_warehouse_schema(schema_path)
        if cls._schema_cache is None:
            cls._schema_cache = read_warehouse_schema()
            if not cls._schema_cache:
                logger.warning("Warehouse schema map not found; clinical predicates disabled")
        return cls._schema_cache

    def __init__(
        self,
        config: EngineConfig | None = None,
        schema_path: Path | None = None,
    ):
        self.config = config or get_config()
        self.schema = self._load_schema(schema_path)
        self.ontology = self.schema.get("ontology", {})
        self.demographics = self.schema.get("demographics", {})
        self.domains = self.schema.get("domains", {})
        self.ontology_alias = self.ontology.get("alias", "ont")
        self.demog_alias = self.demographics.get("alias", "demog")

    def _qualify(self, table: str) -> str:
        if "." in table:
            return table
        return f"{self.config.warehouse_schema}.{table}"

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def generate(self, measure: Measure, generated_at: datetime | None = None) -> str:
        """Generate the complete SQL text for a measure."""
        return self.build(measure, generated_at).render()

    def build(self, measure: Measure, generated_at: datetime | None = None) -> QueryPlan:
        """Compile a measure into a query plan."""
        generated_at = generated_at or datetime.now()
        period = measure.measurement_period

        predicates: dict[str, PredicateFragment] = {}
        for population in measure.populations:
            if population.root_clause is not None:
                self._collect_predicates(population.root_clause, period, predicates)

        populations: list[PopulationFragment] = []
        used_names: dict[str, int] = {}
        for population in measure.populations:
            fragment = self._population_fragment(population, predicates, used_names)
            if fragment is not None:
                populations.append(fragment)

        logger.debug(
            "Generated %d predicates and %d population CTEs for %s",
            len(predicates),
            len(populations),
            measure.measure_id or measure.id,
        )
        return QueryPlan(
            header=tpl.header(measure.title, measure.measure_id, generated_at),
            base_ctes=[self._ontology_cte(), self._demographics_cte()],
            predicates=list(predicates.values()),
            populations=populations,
            final_select=self._final_select(measure, [p.name for p in populations]),
        )

    # -------------------------------------------------------------------------
    # Base CTEs
    # -------------------------------------------------------------------------

    def _ontology_cte(self) -> str:
        return tpl.ontology_cte(
            self.ontology_alias,
            self.config.ontology_table,
            self.ontology.get("vocabularies", []),
            concept_column=self.ontology.get("concept_column", "concept_cki"),
            code_column=self.ontology.get("code_column", "source_concept_identifier"),
            vocabulary_column=self.ontology.get("vocabulary_column", "source_vocabulary_cd"),
            display_column=self.ontology.get("display_column", "source_concept_display"),
        )

    def _demographics_cte(self) -> str:
        return tpl.demographics_cte(
            self.demog_alias,
            self._qualify(self.demographics.get("table", "patient")),
            self.demographics.get("active_filter"),
        )

    # -------------------------------------------------------------------------
    # Predicates
    # -------------------------------------------------------------------------

    def _collect_predicates(
        self,
        clause: Clause,
        period: MeasurementPeriod | None,
        predicates: dict[str, PredicateFragment],
    ) -> None:
        """Depth-first: a clause's elements, then its nested clauses."""
        for element in clause.elements:
            name = predicate_name(element)
            if name in predicates:
                continue
            sql = self.predicate_sql(element, name, period)
            if sql is None:
                continue
            predicates[name] = PredicateFragment(
                name=name,
                key=predicate_key(element),
                element_id=element.id,
                element_type=element.element_type,
                sql=sql,
            )
        for child in clause.children:
            self._collect_predicates(child, period, predicates)

    def predicate_sql(
        self,
        element: Element,
        name: str,
        period: MeasurementPeriod | None = None,
    ) -> str | None:
        """Render the predicate CTE for one element, or None when it has none."""
        if element.element_type == ElementType.ASSESSMENT:
            return None
        if element.element_type == ElementType.DEMOGRAPHIC:
            return self._demographic_predicate(element, name)

        domain = self.domains.get(element.element_type.value)
        if not domain:
            logger.warning(
                "No warehouse mapping for %s elements; skipping %s",
                element.element_type.value,
                element.id,
            )
            return None
        return self._clinical_predicate(element, name, domain, period)

    def _demographic_predicate(self, element: Element, name: str) -> str:
        description = (element.description or "").lower()
        if element.gender is not None:
            gender = element.gender.value
        elif "age" in description:
            gender = None
        elif "female" in description:
            gender = "female"
        elif "male" in description:
            gender = "male"
        else:
            gender = None
        return tpl.demographic_predicate(
            name, self.demog_alias, element.description, gender
        )

    def _clinical_predicate(
        self,
        element: Element,
        name: str,
        domain: dict,
        period: MeasurementPeriod | None,
    ) -> str:
        alias = domain["alias"]
        code_column = self.ontology.get("code_column", "source_concept_identifier")
        vocabulary_column = self.ontology.get("vocabulary_column", "source_vocabulary_cd")

        if domain.get("vocabularies"):
            base_filter = tpl.vocabulary_filter(
                ONTOLOGY_ROW_ALIAS, vocabulary_column, domain["vocabularies"]
            )
        else:
            base_filter = domain.get("status_filter") or "1=1"

        filters = [
            tpl.value_set_filter(
                ONTOLOGY_ROW_ALIAS,
                code_column,
                self.schema.get("value_set_table", "value_set"),
                element.value_set_oid,
            )
        ]

        date_column = domain.get("date_column")
        if period is not None and date_column and domain.get("date_filter", True):
            window = resolve_timing_window(element.timing, period) or (period.start, period.end)
            filters.append(tpl.date_window_filter(f"{alias}.{date_column}", *window))

        thresholds = element.thresholds
        value_column = domain.get("value_column")
        if value_column and thresholds is not None and thresholds.has_value_bounds:
            filters.extend(
                tpl.value_range_filter(
                    f"{alias}.{value_column}", thresholds.value_min, thresholds.value_max
                )
            )

        return tpl.clinical_predicate(
            name=name,
            table=self._qualify(domain["table"]),
            alias=alias,
            concept_column=domain["concept_column"],
            ontology=self.ontology_alias,
            ontology_alias=ONTOLOGY_ROW_ALIAS,
            ontology_concept_column=self.ontology.get("concept_column", "concept_cki"),
            join_type=domain.get("ontology_join", "INNER"),
            base_filter=base_filter,
            extra_filters=filters,
            description=element.description,
            fallback=f"{element.element_type.value} predicate",
        )

    # -------------------------------------------------------------------------
    # Populations
    # -------------------------------------------------------------------------

    def _population_name(self, population: Population, used_names: dict[str, int]) -> str:
        base = population.population_type.value
        count = used_names.get(base, 0) + 1
        used_names[base] = count
        return base if count == 1 else f"{base}_{count}"

    def _population_fragment(
        self,
        population: Population,
        predicates: dict[str, PredicateFragment],
        used_names: dict[str, int],
    ) -> PopulationFragment | None:
        if population.root_clause is None:
            return None
        name = self._population_name(population, used_names)

        joins: dict[str, str] = {}
        self._collect_joins(population.root_clause, predicates, joins)

        where = None
        if self.config.join_strategy == "semantic":
            joins = {pred: "LEFT" for pred in joins}
            where = self.where_expression(population.root_clause, predicates)

        join_lines = [tpl.join_clause(join_type, pred) for pred, join_type in joins.items()]
        return PopulationFragment(
            name=name,
            population_type=population.population_type.value,
            predicates=list(joins),
            sql=tpl.population_cte(name, self.demog_alias, join_lines, where),
        )

    def _collect_joins(
        self,
        clause: Clause,
        predicates: dict[str, PredicateFragment],
        joins: dict[str, str],
    ) -> None:
        """
        One join per predicate used by the tree; the first occurrence wins.

        LEFT for negated elements and members of an OR clause, INNER otherwise.
        """
        for element in clause.elements:
            name = predicate_name(element)
            if name not in predicates or name in joins:
                continue
            if element.negation or clause.operator == LogicalOperator.OR:
                joins[name] = "LEFT"
            else:
                joins[name] = "INNER"
        for child in clause.children:
            self._collect_joins(child, predicates, joins)

    def where_expression(
        self,
        clause: Clause,
        predicates: dict[str, PredicateFragment],
    ) -> str:
        """Boolean expression over LEFT-joined predicates that mirrors the clause tree."""
        parts: list[str] = []
        for element in clause.elements:
            name = predicate_name(element)
            if name not in predicates:
                continue
            test = "IS NULL" if element.negation else "IS NOT NULL"
            parts.append(f"{name}.person_id {test}")
        for child in clause.children:
            parts.append(self.where_expression(child, predicates))

        if clause.operator == LogicalOperator.OR:
            if not parts:
                return "1=0"
            return parts[0] if len(parts) == 1 else "(" + " OR ".join(parts) + ")"
        if clause.operator == LogicalOperator.NOT:
            if not parts:
                return "1=0"
            if self.config.not_semantics == "first_child":
                return f"NOT ({parts[0]})"
            return "NOT (" + " OR ".join(parts) + ")"
        if not parts:
            return "1=1"
        return parts[0] if len(parts) == 1 else "(" + " AND ".join(parts) + ")"

    # -------------------------------------------------------------------------
    # Final select
    # -------------------------------------------------------------------------

    def _final_select(self, measure: Measure, population_names: list[str]) -> str:
        constraints = measure.global_constraints
        if measure.measurement_period is not None:
            reference_date = tpl.date_literal(measure.measurement_period.end)
        else:
            reference_date = "CURRENT_DATE"
        age_expr = f"DATEDIFF(YEAR, d.birth_date, {reference_date})"

        filters = []
        if constraints.age_min is not None:
            filters.append(f"{age_expr} >= {constraints.age_min}")
        if constraints.age_max is not None:
            filters.append(f"{age_expr} <= {constraints.age_max}")
        if constraints.gender is not None:
            filters.append(f"d.gender = {tpl.quote(constraints.gender.value)}")

        return tpl.final_select(self.demog_alias, population_names, filters)


def generate_sql(
    measure: Measure,
    config: EngineConfig | None = None,
    generated_at: datetime | None = None,
) -> str:
    """Generate HDI SQL for a measure."""
    return QueryGenerator(config).generate(measure, generated_at)
