"""
Criteria tree engines: evaluation, population orchestration and SQL generation.
"""

from .evaluator import (
    ClauseResult,
    ElementResult,
    PredicateEvaluator,
    apply_operator,
    matches_code,
    matches_description,
)
from .population import (
    PopulationPipeline,
    detect_required_gender,
    evaluate,
    evaluate_all,
    select_patients_for_measure,
    summarize,
)
from .sqlgen import QueryGenerator, QueryPlan, generate_sql
from .timing import resolve_timing_window

__all__ = [
    "ClauseResult",
    "ElementResult",
    "PredicateEvaluator",
    "apply_operator",
    "matches_code",
    "matches_description",
    "PopulationPipeline",
    "detect_required_gender",
    "evaluate",
    "evaluate_all",
    "select_patients_for_measure",
    "summarize",
    "QueryGenerator",
    "QueryPlan",
    "generate_sql",
    "resolve_timing_window",
]
