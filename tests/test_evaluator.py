"""
Tests for the predicate evaluator.
"""

from datetime import date

import pytest


def _element(**data):
    from measurelab.models import Element

    return Element.model_validate(data)


def _evaluator(**config):
    from measurelab.config import EngineConfig
    from measurelab.engines.evaluator import PredicateEvaluator

    return PredicateEvaluator(EngineConfig(**config))


class TestOperators:
    """Test logical operator semantics."""

    def test_empty_and_is_true(self):
        from measurelab.engines.evaluator import apply_operator
        from measurelab.models import LogicalOperator

        assert apply_operator(LogicalOperator.AND, []) is True

    def test_empty_or_is_false(self):
        from measurelab.engines.evaluator import apply_operator
        from measurelab.models import LogicalOperator

        assert apply_operator(LogicalOperator.OR, []) is False

    def test_empty_not_is_false(self):
        from measurelab.engines.evaluator import apply_operator
        from measurelab.models import LogicalOperator

        assert apply_operator(LogicalOperator.NOT, []) is False
        assert apply_operator(LogicalOperator.NOT, [], "first_child") is False

    def test_not_single_child(self):
        from measurelab.engines.evaluator import apply_operator
        from measurelab.models import LogicalOperator

        for semantics in ("none_of", "first_child"):
            assert apply_operator(LogicalOperator.NOT, [False], semantics) is True
            assert apply_operator(LogicalOperator.NOT, [True], semantics) is False

    def test_not_many_children(self):
        from measurelab.engines.evaluator import apply_operator
        from measurelab.models import LogicalOperator

        assert apply_operator(LogicalOperator.NOT, [False, True], "none_of") is False
        assert apply_operator(LogicalOperator.NOT, [False, True], "first_child") is True

    def test_empty_clauses_in_tree(self, make_patient, period):
        from measurelab.models import Clause

        evaluator = _evaluator()
        patient = make_patient()
        assert evaluator.evaluate_clause(Clause(operator="AND"), patient, period).met is True
        assert evaluator.evaluate_clause(Clause(operator="OR"), patient, period).met is False

    def test_multi_child_not_warns(self, make_patient, period, caplog):
        from measurelab.models import Clause

        clause = Clause.model_validate({
            "operator": "NOT",
            "elements": [
                {"type": "diagnosis", "description": "Pregnancy"},
                {"type": "diagnosis", "description": "Hospice"},
            ],
        })
        result = _evaluator().evaluate_clause(clause, make_patient(), period)
        assert result.met is True
        assert "NOT clause" in caplog.text


class TestDispatch:
    """Test element dispatch."""

    def test_every_element_type_has_handler(self):
        from measurelab.models import ElementType

        evaluator = _evaluator()
        assert set(evaluator.handlers) == set(ElementType)


class TestDemographics:
    """Test demographic elements."""

    def test_gender_case_insensitive(self, make_patient, period):
        element = _element(type="demographic", description="Female", gender="female")
        result = _evaluator().evaluate_element(element, make_patient(gender="FEMALE"), period)
        assert result.met is True
        assert result.facts[0].code == "sex"

    def test_gender_overrides_age(self, make_patient, period):
        element = _element(
            type="demographic",
            gender="male",
            thresholds={"age_min": 18},
        )
        patient = make_patient(gender="male", birth_date=date(2020, 1, 1))
        assert _evaluator().evaluate_element(element, patient, period).met is True

    def test_missing_gender_does_not_match(self, make_patient, period):
        element = _element(type="demographic", gender="female")
        assert _evaluator().evaluate_element(element, make_patient(gender=None), period).met is False

    def test_age_boundaries(self, make_patient, period):
        element = _element(type="demographic", description="Age 18-75", thresholds={"age_min": 18, "age_max": 75})
        evaluator = _evaluator()

        # Turns 18 during the period
        turns_18 = make_patient(birth_date=date(2007, 12, 31))
        result = evaluator.evaluate_element(element, turns_18, period)
        assert result.met is True
        assert result.facts[0].display == "Age: 17 at MP start, 18 at MP end"

        # Still 17 at the end of the period
        too_young = make_patient(birth_date=date(2008, 1, 1))
        assert evaluator.evaluate_element(element, too_young, period).met is False

        # 75 at the start of the period
        exactly_75 = make_patient(birth_date=date(1950, 1, 1))
        assert evaluator.evaluate_element(element, exactly_75, period).met is True

        # 76 at the start
        too_old = make_patient(birth_date=date(1948, 12, 31))
        assert evaluator.evaluate_element(element, too_old, period).met is False

    @pytest.mark.parametrize("thresholds", [{"age_max": 17}, {"age_min": 18}])
    def test_single_age_bound_spanning_birthday(self, make_patient, period, thresholds):
        # 17 at the start of the period and 18 at the end
        element = _element(type="demographic", thresholds=thresholds)
        patient = make_patient(birth_date=date(2007, 12, 31))
        assert _evaluator().evaluate_element(element, patient, period).met is True

    def test_age_without_thresholds_passes(self, make_patient, period):
        element = _element(type="demographic", description="Any age")
        assert _evaluator().evaluate_element(element, make_patient(), period).met is True

    def test_unknown_birth_date_fails(self, make_patient, period):
        element = _element(type="demographic", description="Any age")
        assert _evaluator().evaluate_element(element, make_patient(birth_date=None), period).met is False


class TestClinicalEvents:
    """Test event-backed elements."""

    def test_description_word_match(self, make_patient, period):
        element = _element(type="diagnosis", description="Diabetes mellitus")
        patient = make_patient(diagnoses=[
            {"code": "E11.9", "display": "Type 2 diabetes", "onsetDate": "2025-05-01"},
        ])
        result = _evaluator().evaluate_element(element, patient, period)
        assert result.met is True
        fact = result.facts[0]
        assert fact.source == "Problem List"
        assert fact.code == "E11.9"
        assert fact.date == "2025-05-01"

    def test_short_words_ignored(self, make_patient, period):
        element = _element(type="encounter", description="ED or ICU")
        patient = make_patient(encounters=[{"display": "Red eye", "date": "2025-05-01"}])
        assert _evaluator().evaluate_element(element, patient, period).met is False

    def test_no_match_fact(self, make_patient, period):
        from measurelab.models import NO_MATCH

        element = _element(type="procedure", description="Colonoscopy")
        result = _evaluator().evaluate_element(element, make_patient(), period)
        assert result.met is False
        fact = result.facts[0]
        assert fact.code == NO_MATCH
        assert fact.source == "Procedure Evaluation"
        assert fact.display == "No matching procedure found for: Colonoscopy"

    def test_period_bounds_inclusive(self, make_patient, period):
        element = _element(type="encounter", description="Office visit")
        evaluator = _evaluator()

        for day in ("2025-01-01", "2025-12-31"):
            patient = make_patient(encounters=[{"display": "Office Visit", "date": day}])
            assert evaluator.evaluate_element(element, patient, period).met is True

        for day in ("2024-12-31", "2026-01-01"):
            patient = make_patient(encounters=[{"display": "Office Visit", "date": day}])
            assert evaluator.evaluate_element(element, patient, period).met is False

    def test_undated_event_never_in_window(self, make_patient, period):
        element = _element(type="encounter", description="Office visit")
        patient = make_patient(encounters=[{"display": "Office Visit"}])
        assert _evaluator().evaluate_element(element, patient, period).met is False

    def test_timing_window_used(self, make_patient, period):
        element = _element(
            type="observation",
            description="Cervical cytology",
            timing={"operator": "within", "value": 2, "unit": "year(s)", "anchor": "Measurement Period End"},
        )
        evaluator = _evaluator()
        recent = make_patient(observations=[{"display": "Cervical cytology", "date": "2024-01-15"}])
        stale = make_patient(observations=[{"display": "Cervical cytology", "date": "2023-12-30"}])
        assert evaluator.evaluate_element(element, recent, period).met is True
        assert evaluator.evaluate_element(element, stale, period).met is False

    def test_first_match_wins(self, make_patient, period):
        element = _element(type="medication", description="Statin therapy")
        patient = make_patient(medications=[
            {"code": "1", "display": "Atorvastatin statin", "startDate": "2025-02-01"},
            {"code": "2", "display": "Rosuvastatin statin", "startDate": "2025-03-01"},
        ])
        result = _evaluator().evaluate_element(element, patient, period)
        assert [f.code for f in result.facts] == ["1"]
        assert result.facts[0].source == "Medications"

    def test_code_match(self, make_patient, period):
        element = _element(
            type="diagnosis",
            description="Essential hypertension",
            value_sets=[{"oid": "2.16.1", "codes": [{"code": "I10", "system": "ICD10CM"}]}],
        )
        patient = make_patient(diagnoses=[
            {"code": "I10", "system": "http://hl7.org/fhir/sid/icd-10-cm", "display": "HTN", "date": "2025-02-01"},
        ])
        assert _evaluator().evaluate_element(element, patient, period).met is True

    def test_code_match_respects_system(self, make_patient, period):
        element = _element(
            type="diagnosis",
            description="Essential hypertension",
            value_sets=[{"oid": "2.16.1", "codes": [{"code": "I10", "system": "SNOMED"}]}],
        )
        patient = make_patient(diagnoses=[
            {"code": "I10", "system": "ICD-10-CM", "display": "HTN", "date": "2025-02-01"},
        ])
        assert _evaluator().evaluate_element(element, patient, period).met is False

    def test_code_matching_disabled(self, make_patient, period):
        element = _element(
            type="diagnosis",
            description="Essential hypertension",
            value_sets=[{"codes": [{"code": "I10"}]}],
        )
        patient = make_patient(diagnoses=[{"code": "I10", "display": "HTN", "date": "2025-02-01"}])
        assert _evaluator(code_matching=False).evaluate_element(element, patient, period).met is False
        assert _evaluator(code_matching=True).evaluate_element(element, patient, period).met is True

    def test_observation_thresholds(self, make_patient, period):
        element = _element(
            type="observation",
            description="HbA1c level",
            thresholds={"value_min": 9.0},
        )
        evaluator = _evaluator()
        high = make_patient(observations=[{"display": "HbA1c", "value": 9.5, "unit": "%", "date": "2025-04-01"}])
        low = make_patient(observations=[{"display": "HbA1c", "value": 7.2, "unit": "%", "date": "2025-04-01"}])

        result = evaluator.evaluate_element(element, high, period)
        assert result.met is True
        assert result.facts[0].display == "HbA1c: 9.5 %"
        assert evaluator.evaluate_element(element, low, period).met is False

    def test_non_numeric_value_ignores_thresholds(self, make_patient, period):
        element = _element(type="observation", description="HbA1c level", thresholds={"value_max": 8})
        patient = make_patient(observations=[{"display": "HbA1c", "value": "pending", "date": "2025-04-01"}])
        assert _evaluator().evaluate_element(element, patient, period).met is True

    def test_immunization_requires_completed(self, make_patient, period):
        element = _element(type="immunization", description="Influenza vaccine")
        evaluator = _evaluator()
        refused = make_patient(immunizations=[{"display": "Influenza", "status": "refused", "date": "2025-10-01"}])
        old_dose = make_patient(immunizations=[{"display": "Influenza", "status": "Completed", "date": "2010-10-01"}])

        assert evaluator.evaluate_element(element, refused, period).met is False
        # No timing filter for immunizations
        result = evaluator.evaluate_element(element, old_dose, period)
        assert result.met is True
        assert result.facts[0].source == "Immunizations"

    def test_assessment_tries_each_sequence(self, make_patient, period):
        element = _element(type="functional_status", description="Depression screening")
        patient = make_patient(observations=[{"display": "PHQ-9 depression screen", "date": "2025-05-05"}])
        result = _evaluator().evaluate_element(element, patient, period)
        assert result.met is True
        assert result.facts[-1].source == "Observations"
        no_match_sources = [f.source for f in result.facts if f.is_no_match]
        assert no_match_sources == ["Diagnosis Evaluation", "Encounter Evaluation", "Procedure Evaluation"]


class TestNegation:
    """Test negated elements."""

    def test_negation_inverts(self, make_patient, period):
        element = _element(
            type="diagnosis",
            description="Pregnancy",
            negation=True,
            negation_rationale="Exclude pregnant patients",
        )
        evaluator = _evaluator()

        absent = evaluator.evaluate_element(element, make_patient(), period)
        assert absent.met is True
        assert absent.facts[-1].code == "NEGATED"
        assert "Exclude pregnant patients" in absent.facts[-1].display

        present = make_patient(diagnoses=[{"display": "Pregnancy", "date": "2025-01-05"}])
        assert evaluator.evaluate_element(element, present, period).met is False


class TestTraceNodes:
    """Test explanation node construction."""

    def test_node_shapes(self, make_patient, period):
        from measurelab.models import Clause, NodeStatus

        clause = Clause.model_validate({
            "operator": "AND",
            "elements": [{"id": "e1", "type": "demographic", "description": "x" * 80}],
            "children": [{"id": "c1", "operator": "OR", "elements": [{"type": "diagnosis", "description": "Asthma"}]}],
        })
        result = _evaluator().evaluate_clause(clause, make_patient(), period)

        decision, collector = result.nodes
        assert decision.type == "decision"
        assert decision.title == "x" * 50
        assert decision.status == NodeStatus.PASS
        assert collector.type == "collector"
        assert collector.title == "OR Group"
        assert collector.status == NodeStatus.FAIL
        assert len(collector.children) == 1
        assert result.met is False

    def test_evaluation_is_deterministic(self, make_patient, period, sample_measure):
        from measurelab.models import PopulationType

        clause = sample_measure.get_population(PopulationType.NUMERATOR).root_clause
        patient = make_patient(observations=[{"display": "Cervical cytology", "date": "2025-02-02"}])
        evaluator = _evaluator()
        first = evaluator.evaluate_clause(clause, patient, period)
        second = evaluator.evaluate_clause(clause, patient, period)
        assert first.model_dump() == second.model_dump()


@pytest.mark.parametrize(
    "description, display, expected",
    [
        ("Diabetes mellitus", "type 2 DIABETES", True),
        ("HIV", "HIV infection", False),
        ("", "anything", False),
        ("Office visit", None, False),
    ],
)
def test_matches_description(description, display, expected):
    from measurelab.engines.evaluator import matches_description

    assert matches_description(description, display) is expected
