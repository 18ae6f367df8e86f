import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional

from app.exceptions import DossierValidationError
from app.reimbursement_database import Dossier, ReferenceMedication
from app.services.dossier_validator import validate_dossier
from app.services.medication_matcher import MedicationMatcher
from app.services.reimbursement import calculate_reimbursement, total_reimbursement

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    VALIDATE = "validate"
    MAP_TREATMENTS = "map_treatments"
    CALCULATE_REIMBURSEMENTS = "calculate_reimbursements"
    AGGREGATE = "aggregate"
    DONE = "done"


@dataclass
class DossierFailure:
    affiliation_number: Optional[str]
    stage: Stage
    reason: str

    def as_dict(self) -> dict:
        return {"affiliation_number": self.affiliation_number, "stage": self.stage.value, "reason": self.reason}


@dataclass
class PipelineReport:
    processed: List[Dossier] = field(default_factory=list)
    failures: List[DossierFailure] = field(default_factory=list)


class DossierPipeline:
    """
    Turns a submitted dossier into a reimbursed one.

    Stages run strictly in order (validate, map treatments to the catalog,
    price each matched treatment, aggregate) and the first failure aborts the
    dossier. The dossier is updated in place: only `reimbursed_amount` and the
    treatments' `exists_in_catalog` flags change.
    """

    def __init__(self, matcher: MedicationMatcher, today: Optional[date] = None):
        self.matcher = matcher
        self.today = today

    def process(self, dossier: Dossier) -> Dossier:
        stage = Stage.VALIDATE
        products: List[ReferenceMedication] = []
        amounts: List[Decimal] = []
        while stage is not Stage.DONE:
            if stage is Stage.VALIDATE:
                validate_dossier(dossier, today=self.today)
                stage = Stage.MAP_TREATMENTS
            elif stage is Stage.MAP_TREATMENTS:
                products = self.map_treatments(dossier)
                stage = Stage.CALCULATE_REIMBURSEMENTS
            elif stage is Stage.CALCULATE_REIMBURSEMENTS:
                amounts = [calculate_reimbursement(p) for p in products]
                stage = Stage.AGGREGATE
            elif stage is Stage.AGGREGATE:
                dossier.reimbursed_amount = total_reimbursement(amounts)
                stage = Stage.DONE

        logger.info(
            "Dossier %s reimbursed %s (%d/%d treatments matched)",
            dossier.affiliation_number, dossier.reimbursed_amount, len(products), len(dossier.treatments),
        )
        return dossier

    def map_treatments(self, dossier: Dossier) -> List[ReferenceMedication]:
        # flags are only written once every treatment has been looked up
        matches = [
            (treatment, self.matcher.match(treatment.barcode, treatment.medication_name, treatment.price))
            for treatment in dossier.treatments
        ]

        mapped = []
        for treatment, product in matches:
            treatment.exists_in_catalog = product is not None
            if product is None:
                logger.warning(
                    "No reference medication found for %r (barcode %s, price %s) in dossier %s",
                    treatment.medication_name, treatment.barcode, treatment.price, dossier.affiliation_number,
                )
                continue
            mapped.append(product)
        return mapped

    def process_all(self, dossiers: Iterable[Dossier]) -> PipelineReport:
        """
        Process each dossier on its own. Validation failures are collected in
        the report; store errors propagate and stop the batch.
        """
        report = PipelineReport()
        for dossier in dossiers:
            try:
                report.processed.append(self.process(dossier))
            except DossierValidationError as exc:
                logger.warning("Dossier %s rejected: %s", exc.affiliation_number, exc.message)
                report.failures.append(DossierFailure(exc.affiliation_number, Stage.VALIDATE, exc.message))
        return report
