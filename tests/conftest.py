"""
Shared fixtures for measurelab tests.
"""

import sys
from datetime import date
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

import pytest

SAMPLES_DIR = ROOT / "knowledge" / "samples"


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Isolate every test from MEASURELAB_* variables and the config singleton."""
    from measurelab.config import set_config

    for name in (
        "MEASURELAB_WAREHOUSE_SCHEMA",
        "MEASURELAB_ONTOLOGY_TABLE",
        "MEASURELAB_JOIN_STRATEGY",
        "MEASURELAB_NOT_SEMANTICS",
        "MEASURELAB_CODE_MATCHING",
        "MEASURELAB_MIN_WORD_LENGTH",
    ):
        monkeypatch.delenv(name, raising=False)
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def period():
    from measurelab.models import MeasurementPeriod

    return MeasurementPeriod(start=date(2025, 1, 1), end=date(2025, 12, 31))


@pytest.fixture
def make_patient():
    """Build a PatientBundle from keyword overrides."""
    from measurelab.models import PatientBundle

    def _make(**overrides):
        data = {
            "id": "pt-1",
            "name": "Test Patient",
            "gender": "female",
            "birth_date": date(1980, 6, 15),
        }
        data.update(overrides)
        return PatientBundle.model_validate(data)

    return _make


@pytest.fixture
def sample_measure_path():
    return SAMPLES_DIR / "cms124.yaml"


@pytest.fixture
def sample_patients_path():
    return SAMPLES_DIR / "patients.yaml"


@pytest.fixture
def sample_measure(sample_measure_path):
    from measurelab.loaders import load_measure

    return load_measure(sample_measure_path)


@pytest.fixture
def sample_patients(sample_patients_path):
    from measurelab.loaders import load_patients

    return load_patients(sample_patients_path)
