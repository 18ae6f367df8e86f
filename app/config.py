from dotenv import load_dotenv
from decimal import Decimal
from typing import NamedTuple, Optional
import os

# Load .env into environment variables
load_dotenv()

FRACTION = "fraction"
PERCENT = "percent"
RATE_UNITS = {FRACTION, PERCENT}


class CatalogColumns(NamedTuple):
    """Zero-based positions of the semantic fields inside a catalog row."""
    code: int = 0
    name: int = 1
    active_ingredient: int = 2
    base_price: int = 9
    reimbursement_rate: int = 11

    @property
    def min_width(self) -> int:
        return max(self) + 1


def get_valid_api_keys() -> set[str]:
    keys = os.getenv("MY_API_KEYS", "")
    return {k.strip() for k in keys.split(",") if k.strip()}


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///reimbursement.db")


def get_sql_echo() -> bool:
    return os.getenv("SQL_ECHO", "0").lower() in {"1", "true", "yes"}


def get_log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


def get_catalog_file() -> Optional[str]:
    return os.getenv("CATALOG_FILE") or None


def get_catalog_dir() -> Optional[str]:
    # directory an API caller may pick catalog files from
    return os.getenv("CATALOG_DIR") or None


def get_catalog_rate_unit() -> str:
    unit = os.getenv("CATALOG_RATE_UNIT", FRACTION).strip().lower()
    if unit not in RATE_UNITS:
        raise ValueError(f"CATALOG_RATE_UNIT must be one of {sorted(RATE_UNITS)}, got {unit!r}")
    return unit


def get_catalog_columns() -> CatalogColumns:
    # e.g. CATALOG_COLUMNS="0,1,2,9,11"
    raw = os.getenv("CATALOG_COLUMNS", "")
    if not raw.strip():
        return CatalogColumns()
    positions = [int(p.strip()) for p in raw.split(",") if p.strip()]
    if len(positions) != len(CatalogColumns._fields):
        raise ValueError(
            f"CATALOG_COLUMNS needs {len(CatalogColumns._fields)} positions, got {len(positions)}"
        )
    return CatalogColumns(*positions)


def get_catalog_delimiter() -> str:
    return os.getenv("CATALOG_DELIMITER", ",")


def get_catalog_chunk_size() -> int:
    return int(os.getenv("CATALOG_CHUNK_SIZE", "100"))


def get_dossier_chunk_size() -> int:
    return int(os.getenv("DOSSIER_CHUNK_SIZE", "10"))


def get_price_match_tolerance() -> Decimal:
    return Decimal(os.getenv("PRICE_MATCH_TOLERANCE", "0"))


def import_catalog_on_startup() -> bool:
    return os.getenv("IMPORT_CATALOG_ON_STARTUP", "0").lower() in {"1", "true", "yes"}
