"""
Predicate evaluator.

Walks a criteria tree against one patient bundle and a measurement period,
producing the boolean result together with the explanation nodes that back
it. Pure and deterministic: no I/O, no mutation of its inputs.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from datetime import date

from pydantic import BaseModel, Field

from measurelab.config import EngineConfig, get_config
from measurelab.engines.timing import DateWindow, resolve_timing_window
from measurelab.models import (
    NO_MATCH,
    Clause,
    ClinicalEvent,
    Element,
    ElementType,
    Gender,
    LogicalOperator,
    MeasurementPeriod,
    NodeStatus,
    PatientBundle,
    ValidationFact,
    ValidationNode,
)

logger = logging.getLogger(__name__)

TITLE_LIMIT = 50


# =============================================================================
# RESULTS
# =============================================================================


class ElementResult(BaseModel):
    """Outcome of one element check."""
    element_id: str
    description: str | None = None
    element_type: ElementType
    met: bool
    facts: list[ValidationFact] = Field(default_factory=list)

    def to_node(self) -> ValidationNode:
        description = self.description or ""
        return ValidationNode(
            id=self.element_id,
            title=description[:TITLE_LIMIT],
            type="decision",
            description=self.description,
            status=NodeStatus.PASS if self.met else NodeStatus.FAIL,
            facts=self.facts,
        )


class ClauseResult(BaseModel):
    """Outcome of a clause and the nodes for its direct children."""
    clause_id: str
    operator: LogicalOperator
    met: bool
    nodes: list[ValidationNode] = Field(default_factory=list)


# =============================================================================
# PURE HELPERS
# =============================================================================


def apply_operator(
    operator: LogicalOperator,
    results: Sequence[bool],
    not_semantics: str = "none_of",
) -> bool:
    """
    Combine child results under a logical operator.

    AND is vacuously true and OR vacuously false. NOT with ``none_of`` is
    true when no child is true; ``first_child`` looks only at the first
    child. An empty NOT is false under both.
    """
    if operator == LogicalOperator.AND:
        return all(results)
    if operator == LogicalOperator.OR:
        return any(results)
    if operator == LogicalOperator.NOT:
        if not results:
            return False
        if not_semantics == "first_child":
            return not results[0]
        return not any(results)
    raise ValueError(f"Unhandled operator: {operator}")


def gender_matches(patient_gender: str | None, required: Gender | None) -> bool:
    """Case-insensitive gender check. No requirement always matches; unknown never does."""
    if required is None:
        return True
    if not patient_gender:
        return False
    return patient_gender.strip().lower() == required.value


_WORD_SPLIT = re.compile(r"\s+")


def matches_description(
    element_description: str | None,
    event_display: str | None,
    min_word_length: int = 4,
) -> bool:
    """True when the event display contains a significant word of the description."""
    if not element_description or not event_display:
        return False
    display = event_display.lower()
    for word in _WORD_SPLIT.split(element_description.lower()):
        if len(word) >= min_word_length and word in display:
            return True
    return False


_SYSTEM_ALIASES = {
    "sct": "snomed",
    "snomedct": "snomed",
    "snomedctus": "snomed",
    "icd10": "icd10cm",
    "rxnorm": "rxnorm",
    "rxnormcui": "rxnorm",
}


def normalize_system(system: str | None) -> str | None:
    """Reduce a coding system name or URI to a comparable token."""
    if not system:
        return None
    token = system.strip().lower().rstrip("/").rsplit("/", 1)[-1]
    token = re.sub(r"[^a-z0-9]", "", token)
    return _SYSTEM_ALIASES.get(token, token)


def matches_code(element: Element, event: ClinicalEvent) -> bool:
    """
    True when the event code is in one of the element's value sets.

    Systems are compared only when both sides state one.
    """
    if not event.code:
        return False
    code = event.code.strip()
    event_system = normalize_system(event.system)
    for value_set in element.value_sets:
        for entry in value_set.codes:
            if entry.code.strip() != code:
                continue
            entry_system = normalize_system(entry.system)
            if entry_system and event_system and entry_system != event_system:
                continue
            return True
    return False


def in_window(day: date | None, window: DateWindow) -> bool:
    """Inclusive window check. An undated event is never in a window."""
    if day is None:
        return False
    start, end = window
    return start <= day <= end


def _iso(day: date | None) -> str | None:
    return day.isoformat() if day else None


# =============================================================================
# EVALUATOR
# =============================================================================


class PredicateEvaluator:
    """
    Evaluates criteria trees against a patient.

    Element dispatch goes through ``handlers``, which has one entry per
    ``ElementType``.
    """

    def __init__(self, config: EngineConfig | None = None):
        self.config = config or get_config()
        self.handlers: dict[ElementType, Callable[..., bool]] = {
            ElementType.DEMOGRAPHIC: self._evaluate_demographic,
            ElementType.DIAGNOSIS: self._evaluate_diagnosis,
            ElementType.ENCOUNTER: self._evaluate_encounter,
            ElementType.PROCEDURE: self._evaluate_procedure,
            ElementType.OBSERVATION: self._evaluate_observation,
            ElementType.MEDICATION: self._evaluate_medication,
            ElementType.IMMUNIZATION: self._evaluate_immunization,
            ElementType.ASSESSMENT: self._evaluate_assessment,
        }

    # -------------------------------------------------------------------------
    # Clauses
    # -------------------------------------------------------------------------

    def evaluate_clause(
        self,
        clause: Clause,
        patient: PatientBundle,
        period: MeasurementPeriod,
    ) -> ClauseResult:
        """Evaluate a clause: its elements first, then nested clauses, in order."""
        child_results: list[bool] = []
        nodes: list[ValidationNode] = []

        for element in clause.elements:
            element_result = self.evaluate_element(element, patient, period)
            child_results.append(element_result.met)
            nodes.append(element_result.to_node())

        for child in clause.children:
            child_result = self.evaluate_clause(child, patient, period)
            child_results.append(child_result.met)
            nodes.append(
                ValidationNode(
                    id=child.id,
                    title=child.description or f"{child.operator.value} Group",
                    type="collector",
                    description=child.description,
                    status=NodeStatus.PASS if child_result.met else NodeStatus.FAIL,
                    children=child_result.nodes,
                )
            )

        if clause.operator == LogicalOperator.NOT and len(child_results) > 1:
            logger.warning(
                "NOT clause %s has %d children; combining with %s semantics",
                clause.id,
                len(child_results),
                self.config.not_semantics,
            )

        met = apply_operator(clause.operator, child_results, self.config.not_semantics)
        return ClauseResult(
            clause_id=clause.id, operator=clause.operator, met=met, nodes=nodes
        )

    # -------------------------------------------------------------------------
    # Elements
    # -------------------------------------------------------------------------

    def evaluate_element(
        self,
        element: Element,
        patient: PatientBundle,
        period: MeasurementPeriod,
    ) -> ElementResult:
        """Evaluate a single element, applying its negation flag last."""
        facts: list[ValidationFact] = []
        handler = self.handlers[element.element_type]
        met = handler(patient, element, facts, period)

        if element.negation:
            rationale = f" ({element.negation_rationale})" if element.negation_rationale else ""
            facts.append(
                ValidationFact(
                    code="NEGATED",
                    display=(
                        f"Criterion is negated{rationale}; evidence was "
                        f"{'found' if met else 'absent'}"
                    ),
                    source="Negation",
                )
            )
            met = not met

        logger.debug(
            "Element %s (%s) for patient %s: %s",
            element.id,
            element.element_type.value,
            patient.id,
            "pass" if met else "fail",
        )
        return ElementResult(
            element_id=element.id,
            description=element.description,
            element_type=element.element_type,
            met=met,
            facts=facts,
        )

    def timing_window(self, element: Element, period: MeasurementPeriod) -> DateWindow:
        """The element's resolved timing window, or the measurement period."""
        resolved = resolve_timing_window(element.timing, period)
        if resolved is not None:
            return resolved
        return (period.start, period.end)

    def _matches(self, element: Element, event: ClinicalEvent) -> bool:
        if matches_description(
            element.description, event.display, self.config.min_word_length
        ):
            return True
        return self.config.code_matching and matches_code(element, event)

    def _scan(
        self,
        element: Element,
        events: Iterable[ClinicalEvent],
        facts: list[ValidationFact],
        *,
        source: str,
        noun: str,
        window: DateWindow | None,
        accept: Callable[[ClinicalEvent], bool] | None = None,
        describe: Callable[[ClinicalEvent], str] | None = None,
    ) -> bool:
        """
        Find the first event that matches the element, falls inside the
        window (when one applies) and passes ``accept``.

        Records the supporting event, or a NO_MATCH fact when none qualifies.
        """
        for event in events:
            if not self._matches(element, event):
                continue
            if window is not None and not in_window(event.date, window):
                continue
            if accept is not None and not accept(event):
                continue
            facts.append(
                ValidationFact(
                    code=event.code,
                    display=describe(event) if describe else (event.display or ""),
                    date=_iso(event.date),
                    source=source,
                )
            )
            return True

        facts.append(
            ValidationFact(
                code=NO_MATCH,
                display=f"No matching {noun} found for: {element.description}",
                source=f"{noun.title()} Evaluation",
            )
        )
        return False

    # -- demographic ----------------------------------------------------------

    def _evaluate_demographic(self, patient, element, facts, period) -> bool:
        if element.gender is not None:
            met = gender_matches(patient.gender, element.gender)
            verb = "matches" if met else "does not match"
            facts.append(
                ValidationFact(
                    code="sex",
                    display=f"Patient sex ({patient.gender}) {verb} required ({element.gender.value})",
                    source="Demographics",
                )
            )
            return met
        return self._evaluate_age(patient, element, facts, period)

    def _evaluate_age(self, patient, element, facts, period) -> bool:
        if patient.birth_date is None:
            facts.append(
                ValidationFact(
                    code="AGE", display="Patient birth date is unknown", source="Demographics"
                )
            )
            return False

        age_at_start = patient.age_on(period.start)
        age_at_end = patient.age_on(period.end)
        facts.append(
            ValidationFact(
                code="AGE",
                display=f"Age: {age_at_start} at MP start, {age_at_end} at MP end",
                source="Demographics",
            )
        )

        thresholds = element.thresholds
        if thresholds is None:
            return True
        # Permissive across the period: reaching age_min by the end is enough,
        # and so is still being under age_max at the start.
        if thresholds.age_min is not None and age_at_end < thresholds.age_min:
            return False
        if thresholds.age_max is not None and age_at_start > thresholds.age_max:
            return False
        return True

    # -- clinical event types -------------------------------------------------

    def _evaluate_diagnosis(self, patient, element, facts, period) -> bool:
        return self._scan(
            element,
            patient.diagnoses,
            facts,
            source="Problem List",
            noun="diagnosis",
            window=self.timing_window(element, period),
        )

    def _evaluate_encounter(self, patient, element, facts, period) -> bool:
        return self._scan(
            element,
            patient.encounters,
            facts,
            source="Encounters",
            noun="encounter",
            window=self.timing_window(element, period),
        )

    def _evaluate_procedure(self, patient, element, facts, period) -> bool:
        return self._scan(
            element,
            patient.procedures,
            facts,
            source="Procedures",
            noun="procedure",
            window=self.timing_window(element, period),
        )

    def _evaluate_medication(self, patient, element, facts, period) -> bool:
        return self._scan(
            element,
            patient.medications,
            facts,
            source="Medications",
            noun="medication",
            window=self.timing_window(element, period),
        )

    def _evaluate_observation(self, patient, element, facts, period) -> bool:
        thresholds = element.thresholds

        def within_thresholds(event: ClinicalEvent) -> bool:
            value = event.numeric_value
            if thresholds is None or value is None:
                return True
            return thresholds.contains_value(value)

        def describe(event: ClinicalEvent) -> str:
            display = event.display or ""
            if event.value is None:
                return display
            return f"{display}: {event.display_value}"

        return self._scan(
            element,
            patient.observations,
            facts,
            source="Observations",
            noun="observation",
            window=self.timing_window(element, period),
            accept=within_thresholds,
            describe=describe,
        )

    def _evaluate_immunization(self, patient, element, facts, period) -> bool:
        completed = [
            event
            for event in patient.immunizations
            if (event.status or "").strip().lower() == "completed"
        ]
        return self._scan(
            element,
            completed,
            facts,
            source="Immunizations",
            noun="immunization",
            window=None,
        )

    def _evaluate_assessment(self, patient, element, facts, period) -> bool:
        # Unknown fact type: any of the general clinical sequences may satisfy it
        return (
            self._evaluate_diagnosis(patient, element, facts, period)
            or self._evaluate_encounter(patient, element, facts, period)
            or self._evaluate_procedure(patient, element, facts, period)
            or self._evaluate_observation(patient, element, facts, period)
        )
