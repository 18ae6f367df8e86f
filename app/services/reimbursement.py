from decimal import Decimal
from typing import Iterable

from app.reimbursement_database import ReferenceMedication


def calculate_reimbursement(product: ReferenceMedication) -> Decimal:
    """Amount covered for one matched treatment: base price times the stored rate."""
    return product.base_price * product.reimbursement_rate


def total_reimbursement(amounts: Iterable[Decimal]) -> Decimal:
    amounts = list(amounts)
    if not amounts:
        return Decimal("0")
    return sum(amounts)
