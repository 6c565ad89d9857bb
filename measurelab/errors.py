"""
Exceptions raised by measurelab.

Domain values are parsed leniently (see the models), so these are reserved
for the few conditions a caller has to hear about: a missing input, a
measurement period that cannot drive date arithmetic, or a file that cannot
be loaded.
"""

from typing import Any


class MeasureLabError(Exception):
    """Base exception for all measurelab errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class MissingInputError(MeasureLabError):
    """A measure or patient snapshot was not supplied."""

    def __init__(self, what: str):
        super().__init__(f"Missing required input: {what}", {"input": what})


class InvalidMeasurementPeriodError(MeasureLabError):
    """The measurement period cannot be used for timing arithmetic."""

    pass


class MeasureLoadError(MeasureLabError):
    """A measure or patient file could not be read or parsed."""

    pass
