"""
Clinical data warehouse schema map.

The SQL generator reads table, column and vocabulary names from
hdi_schema.yaml so a different warehouse layout only needs a new file.
"""

from pathlib import Path

import yaml

WAREHOUSE_DIR = Path(__file__).parent
SCHEMA_PATH = WAREHOUSE_DIR / "hdi_schema.yaml"


def read_warehouse_schema(path: Path | None = None) -> dict:
    """Read a warehouse schema file. A missing file yields an empty map."""
    schema_path = Path(path) if path else SCHEMA_PATH
    if not schema_path.exists():
        return {}
    with open(schema_path, "r") as f:
        return yaml.safe_load(f) or {}
