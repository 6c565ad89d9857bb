"""
Criteria tree models for clinical quality measures.

A measure is an ordered list of populations. Each population owns one root
clause; clauses combine nested clauses and leaf elements under AND/OR/NOT.
These snapshots are handed to the evaluator and the SQL generator, which
never mutate them, so every model here is frozen.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import date
from enum import Enum
from typing import Annotated, Any
from uuid import uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


def generate_id() -> str:
    """Generate a unique identifier."""
    return str(uuid4())[:8]


def stringify_number(value: Any) -> Any:
    """Numbers in identifier and code fields are read as their text."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


# Ids and codes often arrive unquoted from YAML
Identifier = Annotated[str, BeforeValidator(stringify_number)]


# =============================================================================
# ENUMS
# =============================================================================


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class ElementType(str, Enum):
    DEMOGRAPHIC = "demographic"
    DIAGNOSIS = "diagnosis"
    OBSERVATION = "observation"
    PROCEDURE = "procedure"
    MEDICATION = "medication"
    IMMUNIZATION = "immunization"
    ENCOUNTER = "encounter"
    ASSESSMENT = "assessment"


class PopulationType(str, Enum):
    INITIAL_POPULATION = "initial_population"
    DENOMINATOR = "denominator"
    DENOMINATOR_EXCLUSION = "denominator_exclusion"
    DENOMINATOR_EXCEPTION = "denominator_exception"
    NUMERATOR = "numerator"
    NUMERATOR_EXCLUSION = "numerator_exclusion"
    MEASURE_POPULATION = "measure_population"
    MEASURE_OBSERVATION = "measure_observation"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class AgeCalculation(str, Enum):
    DURING = "during"  # Most permissive across the period
    AT_START = "at_start"
    AT_END = "at_end"


def _normalize_token(value: str) -> str:
    return value.strip().lower().replace("-", "_").replace(" ", "_")


def coerce_enum(enum_cls: type[Enum], value: Any, default: Enum | None, label: str) -> Any:
    """
    Parse a loosely-typed value into an enum member.

    Unrecognized strings fall back to ``default`` and are logged rather
    than rejected, so one odd value never discards a whole measure.
    """
    if value is None or isinstance(value, enum_cls):
        return value if value is not None else default
    if isinstance(value, str):
        token = _normalize_token(value)
        for member in enum_cls:
            if _normalize_token(member.value) == token or member.name.lower() == token:
                return member
    logger.warning("Unrecognized %s %r, falling back to %s", label, value, default)
    return default


_GENDER_SHORTHAND = {"f": Gender.FEMALE, "m": Gender.MALE}


def coerce_gender(value: Any) -> Gender | None:
    """Parse a gender constraint; blank means no constraint."""
    if value is None or isinstance(value, Gender):
        return value
    if isinstance(value, str):
        token = value.strip().lower()
        if not token:
            return None
        if token in _GENDER_SHORTHAND:
            return _GENDER_SHORTHAND[token]
    return coerce_enum(Gender, value, None, "gender constraint")


# =============================================================================
# BASE
# =============================================================================


class Snapshot(BaseModel):
    """Immutable model that accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )


# =============================================================================
# LEAF ELEMENTS
# =============================================================================


class ThresholdRange(Snapshot):
    """Age or value bounds attached to an element. Every bound is optional."""
    age_min: int | None = None
    age_max: int | None = None
    value_min: float | None = None
    value_max: float | None = None
    comparator: str | None = None
    unit: str | None = None

    @property
    def has_value_bounds(self) -> bool:
        return self.value_min is not None or self.value_max is not None

    def contains_value(self, value: float) -> bool:
        if self.value_min is not None and value < self.value_min:
            return False
        if self.value_max is not None and value > self.value_max:
            return False
        return True


class ValueSetCode(Snapshot):
    """A single code in an expanded value set."""
    code: Identifier
    system: str | None = None
    display: str | None = None
    version: Identifier | None = None


class ValueSetReference(Snapshot):
    """A value set referenced by an element, with its codes already resolved."""
    id: Identifier | None = None
    oid: str | None = None
    url: str | None = None
    name: str | None = None
    version: Identifier | None = None
    codes: tuple[ValueSetCode, ...] = ()


class TimingConstraint(Snapshot):
    """
    Structured timing relative to the measurement period.

    Example: ``within 2 year(s)`` of ``Measurement Period End``.
    """
    operator: str = "during"
    value: int | None = None
    unit: str | None = None
    anchor: str = "Measurement Period"


class Element(Snapshot):
    """A leaf predicate over one clinical fact type."""
    id: Identifier = Field(default_factory=generate_id)
    element_type: ElementType = Field(
        default=ElementType.ASSESSMENT,
        validation_alias=AliasChoices("element_type", "elementType", "type"),
    )
    resource_type: str | None = None
    description: str | None = None

    negation: bool = False
    negation_rationale: str | None = None

    gender: Gender | None = Field(
        default=None,
        validation_alias=AliasChoices("gender", "genderValue", "gender_value"),
    )
    thresholds: ThresholdRange | None = None
    timing: TimingConstraint | None = None
    timing_override: str | None = None
    value_sets: tuple[ValueSetReference, ...] = ()

    # Review metadata, carried for the UI and never evaluated
    confidence: str | None = None
    review_status: str | None = None
    display_order: int = 0

    @field_validator("element_type", mode="before")
    @classmethod
    def _parse_element_type(cls, value: Any) -> Any:
        return coerce_enum(ElementType, value, ElementType.ASSESSMENT, "element type")

    @field_validator("gender", mode="before")
    @classmethod
    def _parse_gender(cls, value: Any) -> Any:
        return coerce_gender(value)

    @property
    def value_set_oid(self) -> str | None:
        """OID of the first value set that declares one."""
        for value_set in self.value_sets:
            if value_set.oid:
                return value_set.oid
        return None

    @property
    def value_set_oids(self) -> list[str]:
        return sorted({vs.oid for vs in self.value_sets if vs.oid})


# =============================================================================
# CLAUSES & POPULATIONS
# =============================================================================


class Clause(Snapshot):
    """An internal tree node combining nested clauses and elements."""
    id: Identifier = Field(default_factory=generate_id)
    operator: LogicalOperator = LogicalOperator.AND
    description: str | None = None
    display_order: int = 0
    children: tuple[Clause, ...] = Field(
        default=(),
        validation_alias=AliasChoices("children", "childClauses", "child_clauses"),
    )
    elements: tuple[Element, ...] = Field(
        default=(),
        validation_alias=AliasChoices("elements", "dataElements", "data_elements"),
    )

    @field_validator("operator", mode="before")
    @classmethod
    def _parse_operator(cls, value: Any) -> Any:
        return coerce_enum(LogicalOperator, value, LogicalOperator.AND, "operator")

    @property
    def is_empty(self) -> bool:
        return not self.children and not self.elements

    def iter_elements(self) -> Iterator[Element]:
        """Yield every element in the subtree, depth-first, elements before children."""
        yield from self.elements
        for child in self.children:
            yield from child.iter_elements()


class Population(Snapshot):
    """A named role in the measure's eligibility logic."""
    id: Identifier = Field(default_factory=generate_id)
    population_type: PopulationType = Field(
        default=PopulationType.INITIAL_POPULATION,
        validation_alias=AliasChoices("population_type", "populationType", "type"),
    )
    description: str | None = None
    narrative: str | None = None
    root_clause: Clause | None = None
    display_order: int = 0

    @field_validator("population_type", mode="before")
    @classmethod
    def _parse_population_type(cls, value: Any) -> Any:
        return coerce_enum(
            PopulationType, value, PopulationType.INITIAL_POPULATION, "population type"
        )

    @property
    def is_empty(self) -> bool:
        return self.root_clause is None or self.root_clause.is_empty


# =============================================================================
# MEASURE
# =============================================================================


class GlobalConstraints(Snapshot):
    """Measure-wide age and gender requirements."""
    age_min: int | None = None
    age_max: int | None = None
    age_calculation: AgeCalculation = AgeCalculation.DURING
    gender: Gender | None = None

    @field_validator("age_calculation", mode="before")
    @classmethod
    def _parse_age_calculation(cls, value: Any) -> Any:
        return coerce_enum(AgeCalculation, value, AgeCalculation.DURING, "age calculation")

    @field_validator("gender", mode="before")
    @classmethod
    def _parse_gender(cls, value: Any) -> Any:
        return coerce_gender(value)

    @property
    def has_age_range(self) -> bool:
        return self.age_min is not None or self.age_max is not None


class MeasurementPeriod(Snapshot):
    """Inclusive date range that timing checks are evaluated against."""
    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> MeasurementPeriod:
        if self.start > self.end:
            raise ValueError(
                f"measurement period start {self.start} is after end {self.end}"
            )
        return self

    @classmethod
    def calendar_year(cls, year: int) -> MeasurementPeriod:
        return cls(start=date(year, 1, 1), end=date(year, 12, 31))


class Measure(Snapshot):
    """
    A clinical quality measure definition.

    Accepts either a nested ``measurement_period`` or the flat
    ``periodStart``/``periodEnd`` keys used by stored measures.
    """
    id: Identifier = Field(default_factory=generate_id)
    measure_id: Identifier | None = None
    title: str | None = None
    version: Identifier | None = None
    description: str | None = None
    populations: tuple[Population, ...] = ()
    global_constraints: GlobalConstraints = Field(default_factory=GlobalConstraints)
    measurement_period: MeasurementPeriod | None = None

    @model_validator(mode="before")
    @classmethod
    def _fold_flat_period(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("measurement_period") or data.get("measurementPeriod"):
            return data
        start = data.get("period_start", data.get("periodStart"))
        end = data.get("period_end", data.get("periodEnd"))
        if start is None and end is None:
            return data
        folded = dict(data)
        folded["measurement_period"] = {"start": start, "end": end}
        return folded

    @field_validator("global_constraints", mode="before")
    @classmethod
    def _default_constraints(cls, value: Any) -> Any:
        return GlobalConstraints() if value is None else value

    def get_population(self, population_type: PopulationType) -> Population | None:
        """Get the first population of a given type."""
        for population in self.populations:
            if population.population_type == population_type:
                return population
        return None

    def iter_elements(self) -> Iterator[Element]:
        for population in self.populations:
            if population.root_clause is not None:
                yield from population.root_clause.iter_elements()


Clause.model_rebuild()
