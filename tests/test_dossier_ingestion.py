import json
import pytest
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from app.model import BatchStatus, DossierSubmission, TreatmentSubmission
from app.reimbursement_database import BatchRun, Dossier, Treatment
from app.services.dossier_ingestion import (
    load_dossier_submissions,
    run_dossier_batch,
    save_dossiers,
    to_dossier,
)
from conftest import TestingSessionLocal, make_dossier, make_submission


WIRE_DOSSIER = {
    "numeroAffiliation": "AFF-900",
    "nomAssure": "Karim Alaoui",
    "immatriculation": "IMM-42",
    "lienParente": "child",
    "montantTotalFrais": 275.0,
    "prixConsultation": 150.0,
    "nombrePiecesJointes": 2,
    "nomBeneficiaire": "Salma Alaoui",
    "dateDepotDossier": "2024-05-02",
    "traitements": [
        {"codeBarre": 1001, "nomMedicament": "Paracétamol", "typeMedicament": "analgesic", "prixMedicament": 50.0, "existe": True},
        {"codeBarre": 1002, "nomMedicament": "Ibuprofen", "typeMedicament": "anti-inflammatory", "prixMedicament": 75.0, "existe": False},
    ],
}


def test_submission_accepts_wire_names():
    submission = DossierSubmission.model_validate(WIRE_DOSSIER)
    assert submission.affiliation_number == "AFF-900"
    assert submission.submission_date == date(2024, 5, 2)
    assert submission.treatments[0].barcode == 1001
    assert submission.treatments[0].price == Decimal("50.0")
    assert submission.treatments[0].exists is True


def test_submission_lets_missing_business_fields_through():
    submission = DossierSubmission.model_validate({"traitements": None})
    assert submission.affiliation_number is None
    assert submission.treatments == []


def test_to_dossier_maps_fields_one_to_one():
    submission = DossierSubmission.model_validate(WIRE_DOSSIER)
    dossier = to_dossier(submission, today=date(2024, 5, 3))

    assert dossier.affiliation_number == "AFF-900"
    assert dossier.insured_name == "Karim Alaoui"
    assert dossier.registration_number == "IMM-42"
    assert dossier.beneficiary_name == "Salma Alaoui"
    assert dossier.relationship_to_insured == "child"
    assert dossier.total_cost == Decimal("275.0")
    assert dossier.consultation_price == Decimal("150.0")
    assert dossier.attachment_count == 2
    assert dossier.submission_date == date(2024, 5, 2)
    assert dossier.treatment_date == date(2024, 5, 3)
    assert dossier.reimbursed_amount is None
    assert [(t.position, t.barcode, t.medication_name) for t in dossier.treatments] == [
        (0, 1001, "Paracétamol"),
        (1, 1002, "Ibuprofen"),
    ]


def test_to_dossier_keeps_submitted_treatment_date():
    submission = make_submission(treatment_date=date(2024, 1, 15))
    assert to_dossier(submission).treatment_date == date(2024, 1, 15)


def test_load_dossier_submissions(tmp_path):
    path = tmp_path / "dossiers.json"
    path.write_text(json.dumps([WIRE_DOSSIER, {**WIRE_DOSSIER, "numeroAffiliation": "AFF-901"}]), encoding="utf-8")
    submissions = load_dossier_submissions(path)
    assert [s.affiliation_number for s in submissions] == ["AFF-900", "AFF-901"]


def test_save_dossiers_is_idempotent_by_affiliation_number(db_session):
    first = make_dossier(affiliation_number="AFF-1", reimbursed_amount=Decimal("10"))
    assert save_dossiers(db_session, [first]) == [first]
    db_session.commit()

    resubmitted = make_dossier(affiliation_number="AFF-1", insured_name="Someone Else", reimbursed_amount=Decimal("99"))
    assert save_dossiers(db_session, [resubmitted]) == []
    db_session.commit()

    stored = db_session.query(Dossier).all()
    assert len(stored) == 1
    assert stored[0].insured_name == "Karim Alaoui"
    assert stored[0].reimbursed_amount == Decimal("10")


def test_save_dossiers_drops_repeats_within_one_call(db_session):
    a = make_dossier(affiliation_number="AFF-1")
    b = make_dossier(affiliation_number="AFF-1", insured_name="Duplicate")
    assert save_dossiers(db_session, [a, b]) == [a]
    db_session.commit()
    assert db_session.query(Dossier).count() == 1


def test_save_dossiers_cascades_treatments(db_session):
    dossier = make_dossier(affiliation_number="AFF-1")
    save_dossiers(db_session, [dossier])
    db_session.commit()
    assert db_session.query(Treatment).count() == 1

    db_session.delete(dossier)
    db_session.commit()
    assert db_session.query(Treatment).count() == 0


def test_run_dossier_batch_end_to_end(db_session, seed_catalog):
    run = run_dossier_batch(db_session, [make_submission("AFF-1")])

    assert run.status == BatchStatus.completed.value
    assert (run.read_count, run.processed_count, run.failed_count, run.written_count) == (1, 1, 0, 1)
    stored = db_session.query(Dossier).filter(Dossier.affiliation_number == "AFF-1").one()
    assert stored.reimbursed_amount == Decimal("92.5")
    assert [t.exists_in_catalog for t in stored.treatments] == [True, True]


def test_run_dossier_batch_with_unmatched_treatment(db_session, seed_catalog):
    submission = make_submission("AFF-2", treatments=[
        TreatmentSubmission(barcode=5555, medication_name="Sirop inconnu", price=Decimal("12.0")),
    ])
    run_dossier_batch(db_session, [submission])
    stored = db_session.query(Dossier).filter(Dossier.affiliation_number == "AFF-2").one()
    assert stored.reimbursed_amount == Decimal("0")
    assert stored.treatments[0].exists_in_catalog is False


def test_run_dossier_batch_records_rejected_dossiers(db_session, seed_catalog):
    submissions = [
        make_submission("AFF-1"),
        make_submission("AFF-2", submission_date=date.today() + timedelta(days=3)),
        make_submission(None),
        make_submission("AFF-4", treatments=[]),
    ]
    run = run_dossier_batch(db_session, submissions, chunk_size=2)

    assert run.processed_count == 1
    assert run.failed_count == 3
    assert [e["affiliation_number"] for e in run.errors] == ["AFF-2", None, "AFF-4"]
    assert [d.affiliation_number for d in db_session.query(Dossier).all()] == ["AFF-1"]


def test_resubmission_is_processed_but_not_stored_twice(db_session, seed_catalog):
    run_dossier_batch(db_session, [make_submission("AFF-1")])
    run = run_dossier_batch(db_session, [make_submission("AFF-1", insured_name="Corrected Name")])

    assert run.processed_count == 1
    assert run.written_count == 0
    assert run.skipped_count == 1
    assert db_session.query(Dossier).count() == 1
    assert db_session.query(Dossier).one().insured_name == "Karim Alaoui"


@pytest.mark.parametrize("chunk_size", [1, 2, 3, 10])
def test_chunk_size_does_not_change_results(db_session, seed_catalog, chunk_size):
    submissions = [
        make_submission("AFF-1"),
        make_submission("AFF-2", treatments=[TreatmentSubmission(barcode=1002, medication_name="Ibuprofen", price=Decimal("75.0"))]),
        make_submission("AFF-3", consultation_price=Decimal("0")),
        make_submission("AFF-4", treatments=[TreatmentSubmission(barcode=1001, medication_name="PARACETAMOL", price=Decimal("50.0"))]),
    ]
    run = run_dossier_batch(db_session, submissions, chunk_size=chunk_size)

    amounts = {d.affiliation_number: d.reimbursed_amount for d in db_session.query(Dossier)}
    assert amounts == {"AFF-1": Decimal("92.5"), "AFF-2": Decimal("52.5"), "AFF-4": Decimal("40")}
    assert run.failed_count == 1


def test_store_failure_marks_run_failed_and_propagates(db_session, seed_catalog):
    error = OperationalError("INSERT", {}, Exception("disk full"))
    with patch("app.services.dossier_ingestion.save_dossiers", side_effect=error):
        with pytest.raises(OperationalError):
            run_dossier_batch(db_session, [make_submission("AFF-1")])

    run = db_session.query(BatchRun).one()
    assert run.status == BatchStatus.failed.value
    assert "disk full" in run.exit_message
    assert db_session.query(Dossier).count() == 0


def test_dossier_stored_concurrently_is_dropped_not_fatal(db_session, seed_catalog, monkeypatch):
    other_writer = TestingSessionLocal()
    other_writer.add(make_dossier(affiliation_number="AFF-1", reimbursed_amount=Decimal("10")))
    other_writer.commit()
    other_writer.close()
    # the other writer's row is not visible when the existence check runs
    monkeypatch.setattr("app.services.dossier_ingestion._stored_affiliation_numbers", lambda db, ids: set())

    run = run_dossier_batch(db_session, [make_submission("AFF-1"), make_submission("AFF-2")], chunk_size=10)

    assert run.status == BatchStatus.completed.value
    assert (run.processed_count, run.written_count, run.skipped_count) == (2, 1, 1)
    stored = {d.affiliation_number: d.reimbursed_amount for d in db_session.query(Dossier)}
    assert stored == {"AFF-1": Decimal("10"), "AFF-2": Decimal("92.5")}


def test_unexpected_error_marks_run_failed(db_session, seed_catalog):
    with patch("app.services.dossier_ingestion.to_dossier", side_effect=KeyError("treatments")):
        with pytest.raises(KeyError):
            run_dossier_batch(db_session, [make_submission("AFF-1")])

    run = db_session.query(BatchRun).one()
    assert run.status == BatchStatus.failed.value
    assert run.finished_at is not None
