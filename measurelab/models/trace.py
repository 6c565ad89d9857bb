"""
Explanation trace models.

A trace records, per patient, the precheck results, the pass/fail of each
population and a recursive node tree of the facts that supported or
contradicted every criterion. The authoring UI renders it for review.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, computed_field

from measurelab.models.measure import PopulationType


class Outcome(str, Enum):
    NOT_IN_POPULATION = "not_in_population"
    EXCLUDED = "excluded"
    IN_NUMERATOR = "in_numerator"
    NOT_IN_NUMERATOR = "not_in_numerator"


class NodeStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


NO_MATCH = "NO_MATCH"


class ValidationFact(BaseModel):
    """A piece of evidence (or the explicit lack of it) behind a check."""
    code: str | None = None
    display: str
    date: str | None = None
    source: str

    @property
    def is_no_match(self) -> bool:
        return self.code == NO_MATCH


class ValidationNode(BaseModel):
    """
    One node in the explanation tree.

    Element checks are ``decision`` nodes carrying facts; nested clauses are
    ``collector`` nodes carrying children.
    """
    id: str
    title: str
    type: str
    description: str | None = None
    status: NodeStatus
    facts: list[ValidationFact] = Field(default_factory=list)
    children: list[ValidationNode] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == NodeStatus.PASS


class PreCheckResult(BaseModel):
    """Result of a tree-independent measure requirement (gender or age)."""
    check_type: str
    met: bool
    description: str


class PopulationResult(BaseModel):
    """Pass/fail for one population, with its explanation nodes."""
    population_type: PopulationType
    met: bool
    evaluated: bool = Field(
        default=False,
        description="Whether the population's criteria tree was actually evaluated",
    )
    nodes: list[ValidationNode] = Field(default_factory=list)


class ValidationTrace(BaseModel):
    """Complete evaluation of one patient against one measure."""
    patient_id: str
    patient_name: str
    patient_gender: str | None = None
    measure_id: str | None = None
    measure_title: str | None = None
    narrative: str
    final_outcome: Outcome
    pre_check_results: list[PreCheckResult] = Field(default_factory=list)
    population_results: list[PopulationResult] = Field(default_factory=list)

    def population(self, population_type: PopulationType) -> PopulationResult | None:
        """Get the result for a population type."""
        for result in self.population_results:
            if result.population_type == population_type:
                return result
        return None

    @property
    def prechecks_passed(self) -> bool:
        return all(check.met for check in self.pre_check_results)


class ValidationSummary(BaseModel):
    """Outcome counts across a batch of patients."""
    total: int = 0
    in_population: int = 0
    in_numerator: int = 0
    excluded: int = 0
    not_in_numerator: int = 0

    @computed_field
    @property
    def performance_rate(self) -> float:
        """Percent of in-population patients that landed in the numerator."""
        if self.in_population == 0:
            return 0.0
        return self.in_numerator / self.in_population * 100


class ValidationResults(BaseModel):
    """Batch evaluation of many patients against one measure."""
    measure_id: str | None = None
    measure_title: str | None = None
    summary: ValidationSummary
    traces: list[ValidationTrace] = Field(default_factory=list)


ValidationNode.model_rebuild()
