import csv
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from sqlalchemy.orm import Session

from app.config import (
    FRACTION,
    PERCENT,
    CatalogColumns,
    get_catalog_chunk_size,
    get_catalog_columns,
    get_catalog_delimiter,
    get_catalog_dir,
    get_catalog_file,
    get_catalog_rate_unit,
)
from app.exceptions import MalformedRecordError
from app.model import BatchStatus
from app.reimbursement_database import BatchRun, ReferenceMedication
from app.services.batch_runs import CATALOG_IMPORT_JOB, fail_run, finish_run, start_run
from app.services.medication_matcher import normalize_medication_name

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass
class CatalogReadResult:
    products: List[ReferenceMedication] = field(default_factory=list)
    skipped: List[MalformedRecordError] = field(default_factory=list)
    duplicates: int = 0


def _decimal(raw: str, label: str, line_number, raw_row) -> Decimal:
    try:
        value = Decimal(raw.strip().replace('"', ""))
    except InvalidOperation:
        raise MalformedRecordError(f"non-numeric {label}: {raw!r}", line_number, raw_row)
    if not value.is_finite():
        raise MalformedRecordError(f"non-numeric {label}: {raw!r}", line_number, raw_row)
    return value


def _rate_as_fraction(rate: Decimal, rate_unit: str, line_number, raw_row) -> Decimal:
    # the store keeps 0..1 fractions whatever unit the file uses
    upper = HUNDRED if rate_unit == PERCENT else Decimal("1")
    if rate < 0 or rate > upper:
        raise MalformedRecordError(f"reimbursement rate out of range: {rate}", line_number, raw_row)
    if rate_unit == PERCENT:
        return rate / HUNDRED
    return rate


def parse_catalog_row(
    fields: Sequence[str],
    columns: CatalogColumns,
    line_number: Optional[int] = None,
    rate_unit: str = FRACTION,
) -> ReferenceMedication:
    raw_row = ",".join(fields)
    if len(fields) < columns.min_width:
        raise MalformedRecordError(
            f"not enough columns ({len(fields)} < {columns.min_width})", line_number, raw_row
        )

    try:
        code = int(fields[columns.code].strip().replace('"', ""))
    except ValueError:
        raise MalformedRecordError(f"non-numeric code: {fields[columns.code][:32]!r}", line_number, raw_row)

    name = fields[columns.name].replace('"', "").strip()
    if not name:
        raise MalformedRecordError("missing medication name", line_number, raw_row)

    base_price = _decimal(fields[columns.base_price], "base price", line_number, raw_row)
    if base_price < 0:
        raise MalformedRecordError(f"negative base price: {base_price}", line_number, raw_row)
    rate = _decimal(fields[columns.reimbursement_rate], "reimbursement rate", line_number, raw_row)

    return ReferenceMedication(
        code=code,
        name=name,
        normalized_name=normalize_medication_name(name),
        active_ingredient=fields[columns.active_ingredient].replace('"', "").strip() or None,
        base_price=base_price,
        reimbursement_rate=_rate_as_fraction(rate, rate_unit, line_number, raw_row),
    )


def _decoded_lines(f, skipped: List[MalformedRecordError]) -> Iterator[str]:
    # An undecodable line becomes a blank one so csv line numbers stay aligned.
    for line_number, raw in enumerate(f, start=1):
        try:
            yield raw.decode("utf-8-sig" if line_number == 1 else "utf-8")
        except UnicodeDecodeError as exc:
            error = MalformedRecordError(
                f"not valid UTF-8 at byte {exc.start}", line_number, raw.decode("utf-8", errors="replace")
            )
            logger.warning("Skipping catalog line %s: %s", line_number, error.message)
            skipped.append(error)
            yield "\n"


def read_catalog(
    path,
    columns: Optional[CatalogColumns] = None,
    delimiter: Optional[str] = None,
    rate_unit: Optional[str] = None,
) -> CatalogReadResult:
    """
    Parse a delimited reference catalog (header line first).

    Malformed rows, including rows that are not valid UTF-8, are logged and
    skipped. When a code appears twice in the same file the first row wins.
    """
    columns = columns or get_catalog_columns()
    delimiter = delimiter or get_catalog_delimiter()
    rate_unit = rate_unit or get_catalog_rate_unit()
    result = CatalogReadResult()
    seen: Dict[int, int] = {}

    with open(path, "rb") as f:
        reader = csv.reader(_decoded_lines(f, result.skipped), delimiter=delimiter)
        next(reader, None)  # header
        for row in reader:
            line_number = reader.line_num
            if not row or not "".join(row).strip():
                continue
            try:
                product = parse_catalog_row(row, columns, line_number, rate_unit)
            except MalformedRecordError as exc:
                logger.warning("Skipping catalog line %s: %s", line_number, exc.message)
                result.skipped.append(exc)
                continue
            if product.code in seen:
                logger.warning(
                    "Skipping catalog line %s: code %s already read on line %s",
                    line_number, product.code, seen[product.code],
                )
                result.duplicates += 1
                continue
            seen[product.code] = line_number
            result.products.append(product)

    logger.info("Read %d catalog rows from %s (%d malformed)", len(result.products), path, len(result.skipped))
    return result


def resolve_catalog_path(requested: str) -> Path:
    """
    Resolve a caller-supplied catalog path inside CATALOG_DIR.

    Raises ValueError when no CATALOG_DIR is configured or when the path
    points outside it.
    """
    base = get_catalog_dir()
    if not base:
        raise ValueError("Catalog path overrides are disabled (CATALOG_DIR is not set)")
    root = Path(base).resolve()
    candidate = (root / requested).resolve()
    if candidate != root and root not in candidate.parents:
        raise ValueError(f"Catalog path must be inside {root}")
    return candidate


def upsert_reference_medications(db: Session, products: List[ReferenceMedication], chunk_size: Optional[int] = None) -> int:
    """Insert the products whose code is not stored yet, one commit per chunk. Returns the insert count."""
    chunk_size = chunk_size or get_catalog_chunk_size()
    inserted = 0
    for start in range(0, len(products), chunk_size):
        chunk = products[start:start + chunk_size]
        codes = [p.code for p in chunk]
        existing = {
            code for (code,) in db.query(ReferenceMedication.code).filter(ReferenceMedication.code.in_(codes)).all()
        }
        to_save = [p for p in chunk if p.code not in existing]
        if to_save:
            db.add_all(to_save)
        db.commit()
        inserted += len(to_save)
    return inserted


def import_catalog(db: Session, path=None, columns: Optional[CatalogColumns] = None) -> BatchRun:
    path = path or get_catalog_file()
    run = start_run(db, CATALOG_IMPORT_JOB)
    try:
        if not path:
            raise FileNotFoundError("No catalog file configured (CATALOG_FILE)")
        if not Path(path).is_file():
            raise FileNotFoundError(f"Catalog file not found: {path}")

        result = read_catalog(path, columns=columns)
        inserted = upsert_reference_medications(db, result.products)
    except Exception as exc:
        logger.exception("Catalog import failed")
        fail_run(db, run, exc)
        raise

    run.read_count = len(result.products) + len(result.skipped) + result.duplicates
    run.processed_count = len(result.products)
    run.failed_count = len(result.skipped)
    run.written_count = inserted
    run.skipped_count = len(result.products) - inserted + result.duplicates
    run.errors = [{"line": e.line_number, "reason": e.message} for e in result.skipped]
    finish_run(db, run, BatchStatus.completed, f"Imported {inserted} new reference medications from {path}")
    logger.info("Catalog import finished: %d inserted, %d already present", inserted, run.skipped_count)
    return run
