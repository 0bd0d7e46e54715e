"""
Permanent ledger entries built from approved staged transactions.

VAT separation:
- Commercial categories carry VAT at the configured rate (gross includes VAT)
- Exempt category types and codes (partner, financing, excluded, interest,
  taxes, loans, ...) are booked with net == gross and no VAT
- Uncategorized transactions are never turned into entries
"""

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from ..config import VatConfig
from ..schemas.categories import CategoryTaxonomy, CategoryType
from ..schemas.session import StagedTransaction

CENT = Decimal("0.01")


@dataclass
class LedgerEntry:
    """One permanent transaction row (external_id == staged transaction id)."""

    external_id: str
    user_id: str
    source_file: str
    row_number: int
    transaction_date: str | None
    raw_date: str | None
    description: str
    raw_amount: str | None
    amount: Decimal
    balance: str | None
    counterparty: str | None
    reference_no: str | None
    category_code: str
    category_type: str | None
    ai_suggested_category: str | None
    ai_confidence: float
    is_income: bool
    is_excluded: bool
    is_manually_categorized: bool
    is_commercial: bool
    net_amount: Decimal
    vat_amount: Decimal
    vat_rate: int

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation (amounts as strings)."""
        data = asdict(self)
        for key in ("amount", "net_amount", "vat_amount"):
            data[key] = str(data[key])
        return data


def split_vat(gross: Decimal, rate: int) -> tuple[Decimal, Decimal]:
    """
    Split a (positive) gross amount into net and VAT.

    Returns:
        (net, vat) rounded to cents, net + vat == gross
    """
    if rate <= 0:
        return gross, Decimal("0.00")
    net = (gross * 100 / (100 + rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    return net, (gross - net).quantize(CENT, rounding=ROUND_HALF_UP)


def is_commercial(
    category_code: str | None, category_type: str | None, vat_config: VatConfig
) -> bool:
    """True if the category carries VAT."""
    if category_type and category_type.upper() in vat_config.exempt_category_types:
        return False
    if category_code and category_code.upper() in vat_config.exempt_category_codes:
        return False
    return True


def build_ledger_entry(
    staged: StagedTransaction,
    user_id: str,
    source_file: str,
    vat_config: VatConfig,
    taxonomy: CategoryTaxonomy | None = None,
) -> LedgerEntry:
    """
    Build the ledger entry for an approved staged transaction.

    The user's category wins over the AI suggestion. The category type is
    taken from the taxonomy when the code is known there.

    Raises:
        ValueError: The transaction has no category.
    """
    category_code = staged.final_category
    if category_code is None:
        raise ValueError(f"Transaction {staged.id} is not categorized")

    taxonomy = taxonomy or CategoryTaxonomy()
    known_type = taxonomy.type_of(category_code)
    if known_type is not None:
        category_type = known_type.value
    elif staged.user_category is None:
        category_type = staged.category_type
    else:
        category_type = None

    amount = staged.amount.quantize(CENT, rounding=ROUND_HALF_UP)
    commercial = is_commercial(category_code, category_type, vat_config)
    rate = vat_config.default_rate if commercial else 0
    net, vat = split_vat(abs(amount), rate)
    raw = staged.raw_fields

    return LedgerEntry(
        external_id=staged.id,
        user_id=user_id,
        source_file=source_file,
        row_number=staged.row_number + 1,
        transaction_date=staged.date,
        raw_date=raw.get("original_date"),
        description=staged.description,
        raw_amount=raw.get("original_amount"),
        amount=amount,
        balance=raw.get("balance"),
        counterparty=staged.ai_counterparty or raw.get("counterparty"),
        reference_no=raw.get("reference"),
        category_code=category_code,
        category_type=category_type,
        ai_suggested_category=staged.category,
        ai_confidence=staged.ai_confidence,
        is_income=amount > 0,
        is_excluded=category_type == CategoryType.EXCLUDED.value,
        is_manually_categorized=staged.user_category is not None,
        is_commercial=commercial,
        net_amount=net if amount >= 0 else -net,
        vat_amount=vat,
        vat_rate=rate,
    )
