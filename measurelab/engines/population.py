"""
Population pipeline.

Orchestrates the evaluator across the dependent population roles of a
measure (initial population, denominator, exclusion, numerator) and folds
the results into one outcome per patient. Also carries the batch helpers
used to validate a measure against a whole test-patient set.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date

from measurelab.config import EngineConfig, get_config
from measurelab.engines.evaluator import PredicateEvaluator, gender_matches
from measurelab.engines.timing import check_period
from measurelab.errors import MissingInputError
from measurelab.models import (
    AgeCalculation,
    Clause,
    Gender,
    Measure,
    MeasurementPeriod,
    Outcome,
    PatientBundle,
    Population,
    PopulationResult,
    PopulationType,
    PreCheckResult,
    ValidationResults,
    ValidationSummary,
    ValidationTrace,
)

logger = logging.getLogger(__name__)

DEFAULT_AGE_MIN = 0
DEFAULT_AGE_MAX = 120
MAX_OPPOSITE_GENDER_PATIENTS = 3

NARRATIVES = {
    Outcome.IN_NUMERATOR: (
        "{patient} meets all criteria for {measure} and is included in the "
        "performance numerator."
    ),
    Outcome.NOT_IN_NUMERATOR: (
        "{patient} is in the denominator for {measure} but does not meet "
        "numerator criteria."
    ),
    Outcome.EXCLUDED: (
        "{patient} meets exclusion criteria and is excluded from {measure} "
        "performance calculation."
    ),
    Outcome.NOT_IN_POPULATION: (
        "{patient} does not meet the initial population criteria for {measure}."
    ),
}


def resolve_period(measure: Measure, today: date | None = None) -> MeasurementPeriod:
    """The measure's period, or the current calendar year when it has none."""
    if measure.measurement_period is not None:
        return check_period(measure.measurement_period)
    today = today or date.today()
    logger.debug(
        "Measure %s has no measurement period; using calendar year %d",
        measure.measure_id or measure.id,
        today.year,
    )
    return MeasurementPeriod.calendar_year(today.year)


def build_narrative(outcome: Outcome, patient_name: str, measure_title: str | None) -> str:
    return NARRATIVES[outcome].format(
        patient=patient_name, measure=measure_title or "the measure"
    )


def denominator_equals_initial_population(population: Population | None) -> bool:
    """An absent or empty denominator, or one described as such, mirrors the IP."""
    if population is None or population.is_empty:
        return True
    description = (population.description or "").lower()
    return "equals initial population" in description


# =============================================================================
# PIPELINE
# =============================================================================


class PopulationPipeline:
    """
    Evaluates patients against a measure's populations.

    Usage:
        pipeline = PopulationPipeline()
        trace = pipeline.evaluate(measure, patient)
        results = pipeline.evaluate_all(measure, patients, max_workers=4)
    """

    def __init__(self, config: EngineConfig | None = None):
        self.config = config or get_config()
        self.evaluator = PredicateEvaluator(self.config)

    # -------------------------------------------------------------------------
    # Prechecks
    # -------------------------------------------------------------------------

    def check_gender(self, measure: Measure, patient: PatientBundle) -> PreCheckResult:
        required = measure.global_constraints.gender
        if required is None:
            return PreCheckResult(
                check_type="gender", met=True, description="No gender requirement"
            )
        met = gender_matches(patient.gender, required)
        if met:
            description = f"Patient gender ({patient.gender}) meets requirement ({required.value})"
        else:
            description = (
                f"Patient gender ({patient.gender}) does not match required gender "
                f"({required.value})"
            )
        return PreCheckResult(check_type="gender", met=met, description=description)

    def check_age(
        self, measure: Measure, patient: PatientBundle, period: MeasurementPeriod
    ) -> PreCheckResult:
        constraints = measure.global_constraints
        if not constraints.has_age_range:
            return PreCheckResult(
                check_type="age", met=True, description="No age requirement"
            )
        if patient.birth_date is None:
            return PreCheckResult(
                check_type="age", met=False, description="Patient birth date is unknown"
            )

        age_at_start = patient.age_on(period.start)
        age_at_end = patient.age_on(period.end)

        if constraints.age_calculation == AgeCalculation.AT_START:
            low_age = high_age = age_at_start
        elif constraints.age_calculation == AgeCalculation.AT_END:
            low_age = high_age = age_at_end
        else:
            # during: old enough by the end, young enough at the start
            low_age, high_age = age_at_end, age_at_start

        met = True
        if constraints.age_min is not None and low_age < constraints.age_min:
            met = False
        if constraints.age_max is not None and high_age > constraints.age_max:
            met = False

        age_min = constraints.age_min if constraints.age_min is not None else DEFAULT_AGE_MIN
        age_max = constraints.age_max if constraints.age_max is not None else DEFAULT_AGE_MAX
        verdict = "meets requirement" if met else "outside required range"
        return PreCheckResult(
            check_type="age",
            met=met,
            description=(
                f"Age {age_at_start}-{age_at_end} {verdict} ({age_min}-{age_max})"
            ),
        )

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _evaluate_population(
        self,
        population_type: PopulationType,
        root_clause: Clause,
        patient: PatientBundle,
        period: MeasurementPeriod,
    ) -> PopulationResult:
        result = self.evaluator.evaluate_clause(root_clause, patient, period)
        return PopulationResult(
            population_type=population_type,
            met=result.met,
            evaluated=True,
            nodes=result.nodes,
        )

    def evaluate(self, measure: Measure, patient: PatientBundle) -> ValidationTrace:
        """Evaluate one patient against a measure."""
        if measure is None:
            raise MissingInputError("measure")
        if patient is None:
            raise MissingInputError("patient")

        period = resolve_period(measure)
        logger.debug(
            "Evaluating patient %s against %s (%s to %s)",
            patient.id,
            measure.measure_id or measure.id,
            period.start,
            period.end,
        )

        prechecks = [
            self.check_gender(measure, patient),
            self.check_age(measure, patient, period),
        ]
        prechecks_passed = all(check.met for check in prechecks)

        ip_pop = measure.get_population(PopulationType.INITIAL_POPULATION)
        denom_pop = measure.get_population(PopulationType.DENOMINATOR)
        excl_pop = measure.get_population(PopulationType.DENOMINATOR_EXCLUSION)
        numer_pop = measure.get_population(PopulationType.NUMERATOR)

        # Initial population
        if prechecks_passed and ip_pop is not None and ip_pop.root_clause is not None:
            ip_result = self._evaluate_population(
                PopulationType.INITIAL_POPULATION, ip_pop.root_clause, patient, period
            )
        else:
            ip_result = PopulationResult(
                population_type=PopulationType.INITIAL_POPULATION, met=prechecks_passed
            )

        # Denominator
        if denominator_equals_initial_population(denom_pop):
            denom_result = PopulationResult(
                population_type=PopulationType.DENOMINATOR, met=ip_result.met
            )
        elif ip_result.met:
            denom_result = self._evaluate_population(
                PopulationType.DENOMINATOR, denom_pop.root_clause, patient, period
            )
        else:
            denom_result = PopulationResult(
                population_type=PopulationType.DENOMINATOR, met=False
            )

        # Denominator exclusion
        if denom_result.met and excl_pop is not None and excl_pop.root_clause is not None:
            excl_result = self._evaluate_population(
                PopulationType.DENOMINATOR_EXCLUSION, excl_pop.root_clause, patient, period
            )
        else:
            excl_result = PopulationResult(
                population_type=PopulationType.DENOMINATOR_EXCLUSION, met=False
            )

        # Numerator
        if (
            denom_result.met
            and not excl_result.met
            and numer_pop is not None
            and numer_pop.root_clause is not None
        ):
            numer_result = self._evaluate_population(
                PopulationType.NUMERATOR, numer_pop.root_clause, patient, period
            )
        else:
            numer_result = PopulationResult(
                population_type=PopulationType.NUMERATOR, met=False
            )

        if not ip_result.met or not denom_result.met:
            outcome = Outcome.NOT_IN_POPULATION
        elif excl_result.met:
            outcome = Outcome.EXCLUDED
        elif numer_result.met:
            outcome = Outcome.IN_NUMERATOR
        else:
            outcome = Outcome.NOT_IN_NUMERATOR

        logger.debug("Patient %s outcome: %s", patient.id, outcome.value)
        return ValidationTrace(
            patient_id=patient.id,
            patient_name=patient.name,
            patient_gender=patient.gender,
            measure_id=measure.measure_id,
            measure_title=measure.title,
            narrative=build_narrative(outcome, patient.name, measure.title),
            final_outcome=outcome,
            pre_check_results=prechecks,
            population_results=[ip_result, denom_result, excl_result, numer_result],
        )

    def evaluate_all(
        self,
        measure: Measure,
        patients: Sequence[PatientBundle],
        max_workers: int | None = None,
    ) -> ValidationResults:
        """
        Evaluate every patient and summarize the outcomes.

        With ``max_workers`` > 1 patients are evaluated on a thread pool;
        traces are always returned in input order.
        """
        if measure is None:
            raise MissingInputError("measure")
        patients = list(patients)

        if max_workers and max_workers > 1 and len(patients) > 1:
            traces: list[ValidationTrace | None] = [None] * len(patients)
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = {
                    executor.submit(self.evaluate, measure, patient): idx
                    for idx, patient in enumerate(patients)
                }
                for future in as_completed(futures):
                    traces[futures[future]] = future.result()
        else:
            traces = [self.evaluate(measure, patient) for patient in patients]

        summary = summarize(traces)
        logger.info(
            "Evaluated %d patients against %s: %d in population, %d in numerator",
            summary.total,
            measure.measure_id or measure.id,
            summary.in_population,
            summary.in_numerator,
        )
        return ValidationResults(
            measure_id=measure.measure_id,
            measure_title=measure.title,
            summary=summary,
            traces=traces,
        )


# =============================================================================
# BATCH HELPERS
# =============================================================================


def summarize(traces: Iterable[ValidationTrace]) -> ValidationSummary:
    """Count outcomes across traces. Excluded patients still count as in population."""
    counts = {outcome: 0 for outcome in Outcome}
    total = 0
    for trace in traces:
        total += 1
        counts[trace.final_outcome] += 1
    return ValidationSummary(
        total=total,
        in_population=total - counts[Outcome.NOT_IN_POPULATION],
        in_numerator=counts[Outcome.IN_NUMERATOR],
        excluded=counts[Outcome.EXCLUDED],
        not_in_numerator=counts[Outcome.NOT_IN_NUMERATOR],
    )


_FEMALE_TITLE_KEYWORDS = (
    "cervical",
    "cervix",
    "pap smear",
    "pap test",
    "mammogra",
    "prenatal",
    "maternal",
    "pregnancy",
)
_FEMALE_MEASURE_IDS = ("CMS124", "CCS", "CMS125", "BCS")
_FEMALE_DESCRIPTION_KEYWORDS = ("women only", "female only")
_MALE_DESCRIPTION_KEYWORDS = ("men only", "male only")


def _scan_clause_for_gender(clause: Clause) -> Gender | None:
    for element in clause.iter_elements():
        if element.gender is not None:
            return element.gender
    return None


def detect_required_gender(measure: Measure) -> Gender | None:
    """
    Work out whether a measure only applies to one gender.

    Checks the global constraint, then well-known title, description and
    measure id keywords, then the first gender constraint in any population.
    """
    if measure.global_constraints.gender is not None:
        return measure.global_constraints.gender

    title = (measure.title or "").lower()
    description = (measure.description or "").lower()
    measure_id = (measure.measure_id or "").upper()

    if (
        any(keyword in title for keyword in _FEMALE_TITLE_KEYWORDS)
        or ("breast" in title and "screen" in title)
        or any(token in measure_id for token in _FEMALE_MEASURE_IDS)
        or any(keyword in description for keyword in _FEMALE_DESCRIPTION_KEYWORDS)
    ):
        return Gender.FEMALE

    # "women only" contains "men only", so female keywords are checked first
    if (
        "prostate" in title
        or "PSA" in measure_id
        or any(keyword in description for keyword in _MALE_DESCRIPTION_KEYWORDS)
    ):
        return Gender.MALE

    for population in measure.populations:
        if population.root_clause is None:
            continue
        found = _scan_clause_for_gender(population.root_clause)
        if found is not None:
            return found
    return None


def select_patients_for_measure(
    measure: Measure, patients: Iterable[PatientBundle]
) -> list[PatientBundle]:
    """
    Keep the patients relevant to a measure.

    For a single-gender measure that is every matching patient plus up to
    three others as expected-fail cases; otherwise every patient.
    """
    patients = list(patients)
    required = detect_required_gender(measure)
    if required is None:
        return patients

    matching = [p for p in patients if gender_matches(p.gender, required)]
    others = [p for p in patients if not gender_matches(p.gender, required)]
    return matching + others[:MAX_OPPOSITE_GENDER_PATIENTS]


# -----------------------------------------------------------------------------
# Module-level conveniences
# -----------------------------------------------------------------------------


def evaluate(
    measure: Measure, patient: PatientBundle, config: EngineConfig | None = None
) -> ValidationTrace:
    """Evaluate one patient against a measure."""
    return PopulationPipeline(config).evaluate(measure, patient)


def evaluate_all(
    measure: Measure,
    patients: Sequence[PatientBundle],
    config: EngineConfig | None = None,
    max_workers: int | None = None,
) -> ValidationResults:
    """Evaluate many patients against a measure."""
    return PopulationPipeline(config).evaluate_all(measure, patients, max_workers)
