import logging
import re
import unicodedata
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.config import get_price_match_tolerance
from app.reimbursement_database import ReferenceMedication

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_SPACES = re.compile(r"\s+")


def normalize_medication_name(name: Optional[str]) -> Optional[str]:
    """
    Canonical form used to compare medication names from dossiers and from the catalog.

    Accents are stripped (NFD + combining marks removed), the result is
    uppercased, anything outside A-Z/0-9 becomes a space and runs of spaces
    collapse. "Paracétamol 500mg" -> "PARACETAMOL 500MG".
    """
    if name is None:
        return None
    decomposed = unicodedata.normalize("NFD", name)
    s = "".join(c for c in decomposed if not unicodedata.combining(c))
    s = _NON_ALNUM.sub(" ", s.upper())
    return _SPACES.sub(" ", s).strip()


class MedicationMatcher:
    """Looks up the catalog entry backing a submitted treatment."""

    def __init__(self, db: Session, price_tolerance: Optional[Decimal] = None):
        self.db = db
        self.price_tolerance = get_price_match_tolerance() if price_tolerance is None else Decimal(price_tolerance)

    def match(self, barcode: int, name: Optional[str], price) -> Optional[ReferenceMedication]:
        """
        Return the reference medication with this code whose normalized name
        contains the normalized `name` and whose base price equals `price`.
        None when nothing matches; store errors propagate.
        """
        normalized = normalize_medication_name(name)
        if not normalized:
            logger.warning("Treatment %s has no usable medication name (%r)", barcode, name)
            return None
        if price is None:
            return None

        price = Decimal(str(price))
        query = (
            self.db.query(ReferenceMedication)
            .filter(ReferenceMedication.code == barcode)
            .filter(ReferenceMedication.normalized_name.contains(normalized))
        )
        if self.price_tolerance > 0:
            query = query.filter(
                ReferenceMedication.base_price.between(price - self.price_tolerance, price + self.price_tolerance)
            )
        else:
            query = query.filter(ReferenceMedication.base_price == price)
        return query.first()
