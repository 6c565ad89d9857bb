"""
Tests for the criteria tree, patient bundle and trace models.
"""

import json
from datetime import date

import pytest
from pydantic import ValidationError


class TestCriteriaModel:
    """Test measure, clause and element parsing."""

    def test_camel_case_measure(self, sample_measure):
        from measurelab.models import AgeCalculation, Gender, LogicalOperator, PopulationType

        assert sample_measure.measure_id == "CMS124v12"
        assert sample_measure.measurement_period.start == date(2025, 1, 1)
        assert sample_measure.measurement_period.end == date(2025, 12, 31)
        assert sample_measure.global_constraints.gender == Gender.FEMALE
        assert sample_measure.global_constraints.age_calculation == AgeCalculation.AT_END

        numerator = sample_measure.get_population(PopulationType.NUMERATOR)
        assert numerator.root_clause.operator == LogicalOperator.OR
        assert len(numerator.root_clause.elements) == 1
        assert len(numerator.root_clause.children) == 1

    def test_unknown_operator_falls_back_to_and(self, caplog):
        from measurelab.models import Clause, LogicalOperator

        clause = Clause.model_validate({"operator": "XOR"})
        assert clause.operator == LogicalOperator.AND
        assert "Unrecognized operator" in caplog.text

    def test_operator_case_insensitive(self):
        from measurelab.models import Clause, LogicalOperator

        assert Clause.model_validate({"operator": "or"}).operator == LogicalOperator.OR

    def test_unknown_element_type_falls_back_to_assessment(self):
        from measurelab.models import Element, ElementType

        element = Element.model_validate({"type": "genomic_marker", "description": "BRCA"})
        assert element.element_type == ElementType.ASSESSMENT

    def test_unknown_population_type_falls_back(self):
        from measurelab.models import Population, PopulationType

        population = Population.model_validate({"populationType": "stratification"})
        assert population.population_type == PopulationType.INITIAL_POPULATION

    def test_population_type_hyphenated(self):
        from measurelab.models import Population, PopulationType

        population = Population.model_validate({"populationType": "denominator-exclusion"})
        assert population.population_type == PopulationType.DENOMINATOR_EXCLUSION

    def test_gender_shorthand(self):
        from measurelab.models import Element, Gender

        assert Element.model_validate({"genderValue": "F"}).gender == Gender.FEMALE
        assert Element.model_validate({"gender": ""}).gender is None

    def test_models_are_frozen(self):
        from measurelab.models import Clause

        clause = Clause()
        with pytest.raises(ValidationError):
            clause.description = "changed"

    def test_iter_elements_order(self):
        from measurelab.models import Clause

        clause = Clause.model_validate({
            "elements": [{"id": "a"}],
            "children": [
                {"elements": [{"id": "b"}], "children": [{"elements": [{"id": "c"}]}]},
                {"elements": [{"id": "d"}]},
            ],
        })
        assert [e.id for e in clause.iter_elements()] == ["a", "b", "c", "d"]

    def test_value_set_oids(self):
        from measurelab.models import Element

        element = Element.model_validate({
            "valueSets": [{"name": "no oid"}, {"oid": "2.2"}, {"oid": "1.1"}],
        })
        assert element.value_set_oid == "2.2"
        assert element.value_set_oids == ["1.1", "2.2"]

    def test_numeric_value_set_code_stringified(self):
        from measurelab.models import ValueSetCode

        assert ValueSetCode.model_validate({"code": 99213}).code == "99213"

    def test_load_measure_with_numeric_ids(self, tmp_path):
        from measurelab.loaders import load_measure

        path = tmp_path / "measure.json"
        path.write_text(json.dumps({
            "id": 7,
            "measureId": 124,
            "populations": [{
                "id": 1,
                "populationType": "initial_population",
                "rootClause": {"id": 2, "dataElements": [{"id": 3, "type": "diagnosis"}]},
            }],
        }))
        measure = load_measure(path)
        population = measure.populations[0]
        assert (measure.id, measure.measure_id) == ("7", "124")
        assert population.id == "1"
        assert population.root_clause.id == "2"
        assert population.root_clause.elements[0].id == "3"


class TestMeasurementPeriod:
    """Test measurement period validation."""

    def test_inverted_period_rejected(self):
        from measurelab.models import MeasurementPeriod

        with pytest.raises(ValidationError):
            MeasurementPeriod(start=date(2025, 12, 31), end=date(2025, 1, 1))

    def test_malformed_period_rejected(self):
        from measurelab.models import Measure

        with pytest.raises(ValidationError):
            Measure.model_validate({"periodStart": "not-a-date", "periodEnd": "2025-12-31"})

    def test_calendar_year(self):
        from measurelab.models import MeasurementPeriod

        period = MeasurementPeriod.calendar_year(2024)
        assert period.start == date(2024, 1, 1)
        assert period.end == date(2024, 12, 31)


class TestPatientBundle:
    """Test lenient patient parsing."""

    def test_event_aliases(self, make_patient):
        patient = make_patient(
            diagnoses=[{"code": "E11.9", "display": "Type 2 diabetes", "onsetDate": "2020-04-01"}],
            medications=[{"code": "860975", "display": "Metformin", "startDate": "2021-01-01"}],
        )
        assert patient.diagnoses[0].date == date(2020, 4, 1)
        assert patient.medications[0].date == date(2021, 1, 1)

    def test_json_string_payload(self, make_patient):
        patient = make_patient(encounters='[{"display": "Office Visit", "date": "2025-03-01"}]')
        assert len(patient.encounters) == 1
        assert patient.encounters[0].display == "Office Visit"

    def test_malformed_payload_is_empty(self, make_patient, caplog):
        patient = make_patient(observations="{not json", procedures={"display": "x"})
        assert patient.observations == ()
        assert patient.procedures == ()
        assert "observations" in caplog.text

    def test_malformed_entries_dropped(self, make_patient):
        patient = make_patient(diagnoses=["oops", {"display": "Asthma"}, 42])
        assert [d.display for d in patient.diagnoses] == ["Asthma"]

    def test_unreadable_dates_are_missing(self, make_patient):
        patient = make_patient(
            birth_date="someday",
            encounters=[{"display": "Visit", "date": "03/01/2025"}],
        )
        assert patient.birth_date is None
        assert patient.encounters[0].date is None

    def test_age_on(self, make_patient):
        patient = make_patient(birth_date=date(2000, 3, 1))
        assert patient.age_on(date(2025, 2, 28)) == 24
        assert patient.age_on(date(2025, 3, 1)) == 25
        assert make_patient(birth_date=None).age_on(date(2025, 1, 1)) is None

    def test_observation_values(self, make_patient):
        patient = make_patient(observations=[
            {"display": "HbA1c", "value": 7.0, "unit": "%"},
            {"display": "Smoking status", "value": "never"},
        ])
        hba1c, smoking = patient.observations
        assert hba1c.numeric_value == 7.0
        assert hba1c.display_value == "7 %"
        assert smoking.numeric_value is None

    def test_numeric_ids_read_as_text(self, make_patient):
        patient = make_patient(id=101, encounters=[{"id": 5, "code": 99213, "display": "Office Visit"}])
        assert patient.id == "101"
        assert patient.encounters[0].id == "5"
        assert patient.encounters[0].code == "99213"

    def test_load_patients_with_numeric_ids(self, tmp_path):
        from measurelab.loaders import load_patients

        path = tmp_path / "patients.yaml"
        path.write_text("patients:\n  - id: 101\n    name: A\n  - id: 102\n    name: B\n")
        assert [p.id for p in load_patients(path)] == ["101", "102"]


class TestTraceModels:
    """Test trace helpers."""

    def test_performance_rate(self):
        from measurelab.models import ValidationSummary

        assert ValidationSummary(in_population=4, in_numerator=3).performance_rate == 75.0
        assert ValidationSummary().performance_rate == 0.0

    def test_performance_rate_serialized(self):
        from measurelab.models import ValidationSummary

        data = ValidationSummary(total=2, in_population=2, in_numerator=1).model_dump()
        assert data["performance_rate"] == 50.0
