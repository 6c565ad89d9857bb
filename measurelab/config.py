"""
Engine configuration for measurelab.

Values come from MEASURELAB_* environment variables; the defaults give the
legacy join rule and none-of NOT semantics.
"""

import os
from typing import Optional


JOIN_STRATEGIES = ("legacy", "semantic")
NOT_SEMANTICS = ("none_of", "first_child")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


class EngineConfig:
    """Configuration shared by the evaluator and the SQL generator."""

    def __init__(
        self,
        warehouse_schema: Optional[str] = None,
        ontology_table: Optional[str] = None,
        join_strategy: Optional[str] = None,
        not_semantics: Optional[str] = None,
        code_matching: Optional[bool] = None,
        min_word_length: Optional[int] = None,
    ):
        self.warehouse_schema = warehouse_schema or os.environ.get(
            "MEASURELAB_WAREHOUSE_SCHEMA", "hsp"
        )
        self.ontology_table = ontology_table or os.environ.get(
            "MEASURELAB_ONTOLOGY_TABLE", "ontology.concept"
        )
        self.join_strategy = (
            join_strategy or os.environ.get("MEASURELAB_JOIN_STRATEGY", "legacy")
        ).lower()
        self.not_semantics = (
            not_semantics or os.environ.get("MEASURELAB_NOT_SEMANTICS", "none_of")
        ).lower()
        self.code_matching = (
            code_matching
            if code_matching is not None
            else _env_bool("MEASURELAB_CODE_MATCHING", True)
        )
        self.min_word_length = (
            min_word_length
            if min_word_length is not None
            else int(os.environ.get("MEASURELAB_MIN_WORD_LENGTH", "4"))
        )
        self.validate()

    def validate(self) -> None:
        """Raise error if a setting is out of range."""
        if self.join_strategy not in JOIN_STRATEGIES:
            raise ValueError(
                f"join_strategy must be one of {JOIN_STRATEGIES}, got {self.join_strategy!r}"
            )
        if self.not_semantics not in NOT_SEMANTICS:
            raise ValueError(
                f"not_semantics must be one of {NOT_SEMANTICS}, got {self.not_semantics!r}"
            )
        if self.min_word_length < 1:
            raise ValueError("min_word_length must be at least 1")

    def __repr__(self) -> str:
        return (
            f"EngineConfig(warehouse_schema={self.warehouse_schema!r}, "
            f"join_strategy={self.join_strategy!r}, not_semantics={self.not_semantics!r}, "
            f"code_matching={self.code_matching!r}, min_word_length={self.min_word_length!r})"
        )


# -----------------------------------------------------------------------------
# Singleton instance
# -----------------------------------------------------------------------------

_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get the engine configuration (singleton)."""
    global _config
    if _config is None:
        _config = EngineConfig()
    return _config


def set_config(config: Optional[EngineConfig]) -> None:
    """Replace the process-wide configuration. Pass None to reload from the environment."""
    global _config
    _config = config
