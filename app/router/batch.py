from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from app.dependencies import get_api_key
from app.model import BatchResponse, BatchRunOut, DossierOut, DossierSubmission, ReferenceMedicationOut
from app.reimbursement_database import get_db, Dossier, ReferenceMedication
from app.services.batch_runs import get_run
from app.services.catalog_importer import import_catalog, resolve_catalog_path
from app.services.dossier_ingestion import run_dossier_batch
from app.services.medication_matcher import normalize_medication_name

router = APIRouter(tags=["Reimbursement batches"])


@router.post("/start-batch", response_model=BatchResponse)
def start_dossier_batch(
    dossiers: List[DossierSubmission],
    db: Session = Depends(get_db),
    api_key: str = Depends(get_api_key)
):
    try:
        run = run_dossier_batch(db, dossiers)
    except Exception as exc:
        raise HTTPException(status_code=500, detail=f"Batch job failed. Error: {exc}") from exc

    return {
        "message": f"Batch job has been invoked. Status: {run.status}",
        "run": run,
    }


@router.get("/batch-runs/{run_id}", response_model=BatchRunOut)
def get_batch_run(run_id: int, db: Session = Depends(get_db), api_key: str = Depends(get_api_key)):
    run = get_run(db, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Batch run not found")
    return run


@router.get("/dossiers")
def list_dossiers(
    db: Session = Depends(get_db),
    api_key: str = Depends(get_api_key),
    limit: Optional[int] = Query(50, ge=1, le=500),
    offset: Optional[int] = Query(0, ge=0),
) -> dict:
    dossiers = (
        db.query(Dossier)
        .order_by(Dossier.created_at.desc(), Dossier.affiliation_number)
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {
        "count": len(dossiers),
        "results": [DossierOut.model_validate(d) for d in dossiers],
    }


@router.get("/dossiers/{affiliation_number}", response_model=DossierOut)
def get_dossier(affiliation_number: str, db: Session = Depends(get_db), api_key: str = Depends(get_api_key)):
    dossier = db.query(Dossier).filter(Dossier.affiliation_number == affiliation_number).first()
    if not dossier:
        raise HTTPException(status_code=404, detail="Dossier not found")
    return dossier


@router.post("/catalog/import", response_model=BatchResponse)
def import_reference_catalog(
    path: Optional[str] = Query(None, description="Catalog file under CATALOG_DIR, defaults to CATALOG_FILE"),
    db: Session = Depends(get_db),
    api_key: str = Depends(get_api_key),
):
    if path:
        try:
            path = resolve_catalog_path(path)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        run = import_catalog(db, path=path)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(status_code=500, detail=f"Catalog import failed. Error: {exc}") from exc

    return {
        "message": f"Catalog import finished. Status: {run.status}",
        "run": run,
    }


@router.get("/catalog")
def list_reference_medications(
    db: Session = Depends(get_db),
    api_key: str = Depends(get_api_key),
    q: Optional[str] = Query(None, min_length=2, description="Search term for medication names"),
    limit: Optional[int] = Query(15, ge=1, le=100),
) -> dict:
    query = db.query(ReferenceMedication)
    if q:
        query = query.filter(ReferenceMedication.normalized_name.contains(normalize_medication_name(q)))
    medications = query.order_by(ReferenceMedication.code).limit(limit).all()
    return {
        "count": len(medications),
        "medicines": [ReferenceMedicationOut.model_validate(m) for m in medications],
    }
