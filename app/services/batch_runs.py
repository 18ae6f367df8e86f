import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.model import BatchStatus
from app.reimbursement_database import BatchRun

CATALOG_IMPORT_JOB = "catalog-import"
DOSSIER_IMPORT_JOB = "dossier-import"

logger = logging.getLogger(__name__)


def start_run(db: Session, job_name: str) -> BatchRun:
    run = BatchRun(
        job_name=job_name,
        status=BatchStatus.started.value,
        started_at=datetime.utcnow(),
        read_count=0,
        processed_count=0,
        failed_count=0,
        written_count=0,
        skipped_count=0,
        errors=[],
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def finish_run(db: Session, run: BatchRun, status: BatchStatus, message: Optional[str] = None) -> BatchRun:
    run.status = status.value
    run.finished_at = datetime.utcnow()
    run.exit_message = message
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def get_run(db: Session, run_id: int) -> Optional[BatchRun]:
    return db.query(BatchRun).filter(BatchRun.id == run_id).first()


def fail_run(db: Session, run: BatchRun, exc: BaseException) -> None:
    """Roll back the open transaction and mark the run FAILED. The caller re-raises `exc`."""
    db.rollback()
    try:
        finish_run(db, run, BatchStatus.failed, str(exc))
    except SQLAlchemyError:
        logger.exception("Could not record failure of batch run %s", inspect(run).identity)
