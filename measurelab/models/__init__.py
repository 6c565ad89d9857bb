"""
Data models for measurelab.
"""

from .measure import (
    AgeCalculation,
    Clause,
    Element,
    ElementType,
    Gender,
    GlobalConstraints,
    LogicalOperator,
    Measure,
    MeasurementPeriod,
    Population,
    PopulationType,
    ThresholdRange,
    TimingConstraint,
    ValueSetCode,
    ValueSetReference,
    generate_id,
)
from .patient import ClinicalEvent, PatientBundle, EVENT_SEQUENCES
from .trace import (
    NO_MATCH,
    NodeStatus,
    Outcome,
    PopulationResult,
    PreCheckResult,
    ValidationFact,
    ValidationNode,
    ValidationResults,
    ValidationSummary,
    ValidationTrace,
)

__all__ = [
    "AgeCalculation",
    "Clause",
    "Element",
    "ElementType",
    "Gender",
    "GlobalConstraints",
    "LogicalOperator",
    "Measure",
    "MeasurementPeriod",
    "Population",
    "PopulationType",
    "ThresholdRange",
    "TimingConstraint",
    "ValueSetCode",
    "ValueSetReference",
    "generate_id",
    "ClinicalEvent",
    "PatientBundle",
    "EVENT_SEQUENCES",
    "NO_MATCH",
    "NodeStatus",
    "Outcome",
    "PopulationResult",
    "PreCheckResult",
    "ValidationFact",
    "ValidationNode",
    "ValidationResults",
    "ValidationSummary",
    "ValidationTrace",
]
