"""
Measure and patient file loaders.

Both YAML and JSON are accepted; the format is chosen by file extension.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from measurelab.errors import MeasureLoadError
from measurelab.models import Measure, PatientBundle

logger = logging.getLogger(__name__)

YAML_SUFFIXES = {".yaml", ".yml"}


def read_document(path: Path | str) -> Any:
    """Read a YAML or JSON file into plain Python data."""
    path = Path(path)
    if not path.exists():
        raise MeasureLoadError(f"File not found: {path}", {"path": str(path)})
    try:
        with open(path, "r") as f:
            if path.suffix.lower() in YAML_SUFFIXES:
                return yaml.safe_load(f)
            return json.load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise MeasureLoadError(f"Could not parse {path.name}", {"error": str(e)}) from e


def load_measure(path: Path | str) -> Measure:
    """Load a measure definition. A ``measure`` wrapper key is unwrapped."""
    data = read_document(path)
    if isinstance(data, dict) and isinstance(data.get("measure"), dict):
        data = data["measure"]
    if not isinstance(data, dict):
        raise MeasureLoadError(
            f"Measure file {Path(path).name} must contain a mapping",
            {"type": type(data).__name__},
        )
    try:
        measure = Measure.model_validate(data)
    except ValidationError as e:
        raise MeasureLoadError(
            f"Invalid measure in {Path(path).name}", {"errors": e.error_count()}
        ) from e
    logger.debug("Loaded measure %s from %s", measure.measure_id or measure.id, path)
    return measure


def load_patients(path: Path | str) -> list[PatientBundle]:
    """
    Load test patients.

    The file may hold a list of patients, a mapping with a ``patients`` key,
    or a single patient mapping.
    """
    data = read_document(path)
    if isinstance(data, dict):
        data = data.get("patients", [data])
    if not isinstance(data, list):
        raise MeasureLoadError(
            f"Patient file {Path(path).name} must contain a list of patients",
            {"type": type(data).__name__},
        )

    patients = []
    for idx, entry in enumerate(data):
        try:
            patients.append(PatientBundle.model_validate(entry))
        except ValidationError as e:
            raise MeasureLoadError(
                f"Invalid patient at index {idx} in {Path(path).name}",
                {"errors": e.error_count()},
            ) from e
    logger.debug("Loaded %d patients from %s", len(patients), path)
    return patients
