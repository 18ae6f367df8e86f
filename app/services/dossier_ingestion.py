import json
import logging
from datetime import date
from typing import List, Optional, Sequence

from pydantic import TypeAdapter
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_dossier_chunk_size
from app.model import BatchStatus, DossierSubmission
from app.reimbursement_database import BatchRun, Dossier, Treatment
from app.services.batch_runs import DOSSIER_IMPORT_JOB, fail_run, finish_run, start_run
from app.services.dossier_pipeline import DossierPipeline
from app.services.medication_matcher import MedicationMatcher

logger = logging.getLogger(__name__)

_submissions_adapter = TypeAdapter(List[DossierSubmission])


def to_dossier(submission: DossierSubmission, today: Optional[date] = None) -> Dossier:
    """Map an inbound submission onto the Dossier/Treatment entities, field for field."""
    dossier = Dossier(
        affiliation_number=submission.affiliation_number,
        insured_name=submission.insured_name,
        registration_number=submission.registration_number,
        beneficiary_name=submission.beneficiary_name,
        relationship_to_insured=submission.relationship_to_insured,
        submission_date=submission.submission_date,
        treatment_date=submission.treatment_date or today or date.today(),
        attachment_count=submission.attachment_count,
        consultation_price=submission.consultation_price,
        total_cost=submission.total_cost,
        reimbursed_amount=None,
    )
    dossier.treatments = [
        Treatment(
            position=i,
            barcode=t.barcode,
            medication_name=t.medication_name,
            medication_type=t.medication_type,
            price=t.price,
            exists_in_catalog=t.exists,
        )
        for i, t in enumerate(submission.treatments)
    ]
    return dossier


def load_dossier_submissions(path) -> List[DossierSubmission]:
    """Read a JSON array of dossier submissions from disk."""
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    return _submissions_adapter.validate_python(payload)


def _stored_affiliation_numbers(db: Session, ids: Sequence[str]) -> set:
    return {
        number for (number,) in db.query(Dossier.affiliation_number).filter(Dossier.affiliation_number.in_(ids)).all()
    }


def save_dossiers(db: Session, dossiers: Sequence[Dossier]) -> List[Dossier]:
    """
    Stage the dossiers whose affiliation number is not stored yet.

    Existing dossiers are never updated; a number repeated inside `dossiers`
    keeps its first occurrence. The caller owns the commit.
    """
    if not dossiers:
        return []
    existing = _stored_affiliation_numbers(db, [d.affiliation_number for d in dossiers])

    to_save = []
    for dossier in dossiers:
        if dossier.affiliation_number in existing:
            logger.info("Dossier %s already stored, skipping", dossier.affiliation_number)
            continue
        existing.add(dossier.affiliation_number)
        to_save.append(dossier)

    if to_save:
        db.add_all(to_save)
        db.flush()
    return to_save


def store_chunk(db: Session, dossiers: Sequence[Dossier]) -> int:
    """
    Save and commit one chunk of processed dossiers. Returns the number written.

    When another writer stores one of the affiliation numbers between the
    existence check and the commit, the chunk is rolled back and retried one
    dossier per transaction so only the conflicting dossiers are dropped.
    """
    try:
        saved = save_dossiers(db, dossiers)
        db.commit()
        return len(saved)
    except IntegrityError:
        db.rollback()
        logger.warning("Affiliation number stored concurrently, saving chunk dossier by dossier")

    written = 0
    for dossier in dossiers:
        try:
            written += len(save_dossiers(db, [dossier]))
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Dossier %s already stored, skipping", dossier.affiliation_number)
    return written


def run_dossier_batch(
    db: Session,
    submissions: Sequence[DossierSubmission],
    chunk_size: Optional[int] = None,
    today: Optional[date] = None,
) -> BatchRun:
    """
    Process a batch of submissions end to end and record it as a BatchRun.

    Each chunk is converted, pushed through the pipeline and persisted in one
    transaction. Rejected dossiers are listed on the run; a store failure
    rolls back the current chunk, marks the run FAILED and is re-raised.
    """
    chunk_size = chunk_size or get_dossier_chunk_size()
    run = start_run(db, DOSSIER_IMPORT_JOB)
    pipeline = DossierPipeline(MedicationMatcher(db), today=today)
    run_id = run.id
    logger.info("Starting dossier batch run %s with %d dossiers", run_id, len(submissions))

    processed = written = 0
    failures = []
    try:
        for start in range(0, len(submissions), chunk_size):
            chunk = submissions[start:start + chunk_size]
            report = pipeline.process_all(to_dossier(s, today) for s in chunk)
            saved = store_chunk(db, report.processed)
            processed += len(report.processed)
            written += saved
            failures.extend(f.as_dict() for f in report.failures)
    except Exception as exc:
        logger.exception("Dossier batch run %s failed", run_id)
        fail_run(db, run, exc)
        raise

    run.read_count = len(submissions)
    run.processed_count = processed
    run.failed_count = len(failures)
    run.written_count = written
    run.skipped_count = processed - written
    run.errors = failures
    finish_run(db, run, BatchStatus.completed)
    logger.info(
        "Dossier batch run %s completed: %d processed, %d rejected, %d written",
        run_id, processed, len(failures), written,
    )
    return run
