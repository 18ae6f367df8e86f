from datetime import date
from typing import Optional

from app.exceptions import DossierValidationError
from app.reimbursement_database import Dossier


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def validate_dossier(dossier: Dossier, today: Optional[date] = None) -> Dossier:
    """
    Fail-fast integrity check run before any matching or calculation.

    Checks, in order: affiliation number, insured name, beneficiary name,
    submission date (present, not in the future), consultation price > 0,
    declared total cost > 0, at least one treatment. The first failing check
    raises DossierValidationError; the dossier itself is never modified.
    """
    today = today or date.today()
    affiliation = dossier.affiliation_number

    def fail(reason: str):
        raise DossierValidationError(reason, affiliation_number=affiliation)

    if _is_blank(affiliation):
        fail("Affiliation number is missing.")

    if _is_blank(dossier.insured_name):
        fail("Insured name is missing.")

    if _is_blank(dossier.beneficiary_name):
        fail("Beneficiary name is missing.")

    if dossier.submission_date is None or dossier.submission_date > today:
        fail("Invalid submission date.")

    if dossier.consultation_price is None or dossier.consultation_price <= 0:
        fail("Consultation price must be positive.")

    if dossier.total_cost is None or dossier.total_cost <= 0:
        fail("Total cost must be positive.")

    if not dossier.treatments:
        fail("Dossier must contain at least one treatment.")

    return dossier
