"""
Patient fact bundle models.

A bundle is the immutable snapshot of one test patient: demographics plus
six independent, ordered sequences of clinical events. Event payloads come
from test-data generation and are loosely typed, so parsing is forgiving:
a payload that cannot be read becomes an empty sequence and the problem is
logged instead of raised.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any

from dateutil.relativedelta import relativedelta
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from measurelab.models.measure import Identifier, generate_id

logger = logging.getLogger(__name__)


EVENT_SEQUENCES = (
    "diagnoses",
    "encounters",
    "procedures",
    "observations",
    "medications",
    "immunizations",
)


def parse_date(value: Any, label: str = "date") -> dt.date | None:
    """Parse an ISO date (or datetime) leniently, returning None when unreadable."""
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return dt.date.fromisoformat(text[:10])
        except ValueError:
            pass
    logger.warning("Unparsable %s %r treated as missing", label, value)
    return None


# =============================================================================
# CLINICAL EVENTS
# =============================================================================


class ClinicalEvent(BaseModel):
    """
    One clinical fact: a diagnosis, encounter, procedure, observation,
    medication or immunization record.

    Diagnoses arrive with ``onsetDate`` and medications with ``startDate``;
    both land in ``date``.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: Identifier = Field(default_factory=generate_id)
    code: Identifier | None = None
    system: str | None = None
    display: str | None = None
    date: dt.date | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "date",
            "onsetDate",
            "onset_date",
            "startDate",
            "start_date",
            "effectiveDate",
            "effective_date",
            "performedDate",
            "performed_date",
        ),
    )
    value: float | str | None = None
    unit: str | None = None
    status: str | None = None

    @field_validator("date", mode="before")
    @classmethod
    def _lenient_date(cls, value: Any) -> Any:
        return parse_date(value, "event date")

    @field_validator("value", mode="before")
    @classmethod
    def _drop_bool_value(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return str(value).lower()
        return value

    @property
    def numeric_value(self) -> float | None:
        """The value when it was supplied as a number, else None."""
        if isinstance(self.value, float):
            return self.value
        return None

    @property
    def display_value(self) -> str:
        if self.value is None:
            return ""
        value = self.value
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        unit_str = f" {self.unit}" if self.unit else ""
        return f"{value}{unit_str}"


def parse_event_sequence(value: Any, label: str) -> list[Any]:
    """
    Normalize a clinical event payload to a list of events.

    Accepts a list, or a JSON string holding one. Anything else yields an
    empty list; entries that are not readable events are dropped.
    """
    if value is None:
        return []
    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            value = json.loads(value)
        except ValueError as exc:
            logger.warning("Failed to parse %s payload: %s", label, exc)
            return []
    if isinstance(value, tuple):
        value = list(value)
    if not isinstance(value, list):
        logger.warning(
            "Expected a list for %s, got %s; treating as empty", label, type(value).__name__
        )
        return []
    entries = []
    for item in value:
        if isinstance(item, ClinicalEvent):
            entries.append(item)
            continue
        if not isinstance(item, dict):
            logger.warning("Dropping malformed %s entry %r", label, item)
            continue
        try:
            entries.append(ClinicalEvent.model_validate(item))
        except ValidationError as exc:
            logger.warning(
                "Dropping malformed %s entry: %s", label, exc.errors()[0]["msg"]
            )
    return entries


# =============================================================================
# PATIENT BUNDLE (ROOT MODEL)
# =============================================================================


class PatientBundle(BaseModel):
    """
    Complete test patient snapshot.

    This is the patient-side input to every evaluation.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: Identifier = Field(default_factory=generate_id)
    name: str = "Unnamed patient"

    # Demographics
    gender: str | None = Field(
        default=None, validation_alias=AliasChoices("gender", "sex")
    )
    birth_date: dt.date | None = Field(
        default=None,
        validation_alias=AliasChoices("birth_date", "birthDate", "date_of_birth"),
    )
    race: str | None = None
    ethnicity: str | None = None

    # Clinical event sequences
    diagnoses: tuple[ClinicalEvent, ...] = ()
    encounters: tuple[ClinicalEvent, ...] = ()
    procedures: tuple[ClinicalEvent, ...] = ()
    observations: tuple[ClinicalEvent, ...] = ()
    medications: tuple[ClinicalEvent, ...] = ()
    immunizations: tuple[ClinicalEvent, ...] = ()

    @field_validator("birth_date", mode="before")
    @classmethod
    def _lenient_birth_date(cls, value: Any) -> Any:
        return parse_date(value, "birth date")

    @field_validator(*EVENT_SEQUENCES, mode="before")
    @classmethod
    def _lenient_events(cls, value: Any, info) -> Any:
        return parse_event_sequence(value, info.field_name)

    def age_on(self, day: dt.date) -> int | None:
        """Whole years of age on a given day, or None without a birth date."""
        if self.birth_date is None:
            return None
        return relativedelta(day, self.birth_date).years
