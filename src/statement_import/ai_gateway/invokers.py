"""
Stage invokers backed by the AI gateway.

ExtractionInvoker turns the raw rows of one batch into ExtractedTransaction
items; CategorizationInvoker assigns a taxonomy category to every staged
transaction of one batch. Gateway errors are translated into stage errors
so the executor can tell retryable failures from unusable answers.
"""

import json
import logging
import re
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from ..pipeline.executor import (
    MalformedResponseError,
    StageError,
    StageTimeoutError,
    StageTransportError,
)
from ..schemas.categories import BALANCE_IMPACTS, CategoryTaxonomy, CategoryType
from ..schemas.session import (
    BatchRecord,
    CategorizedUpdate,
    ExtractedTransaction,
    Stage,
    StagedTransaction,
)
from .client import (
    AIGatewayClient,
    AIGatewayError,
    AIGatewayTimeoutError,
    AIGatewayUnavailableError,
)
from .prompts import CategorizationPrompt, ExtractionPrompt, parse_json_response

logger = logging.getLogger(__name__)

DEFAULT_EXTRACTION_CONFIDENCE = 0.8
UNMATCHED_CATEGORY_CONFIDENCE = 0.3

_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%y", "%Y/%m/%d", "%Y.%m.%d")
_CURRENCY_RE = re.compile(r"(TRY|TL|₺|EUR|USD|€|\$|\s)", re.IGNORECASE)


def _stage_error(error: AIGatewayError, stage: Stage) -> StageError:
    if isinstance(error, AIGatewayTimeoutError):
        return StageTimeoutError(str(error), stage)
    if isinstance(error, AIGatewayUnavailableError):
        return StageTransportError(str(error), stage)
    return MalformedResponseError(str(error), stage)


def parse_amount(value: Any) -> Decimal | None:
    """
    Parse an amount as written by the model or the bank.

    Numbers are taken as is. Strings may use Turkish grouping
    ("1.234,56"), international grouping ("1,234.56") or none, and may
    carry a currency marker. A single dot followed by exactly three digits
    is read as a thousands separator ("1.234" is 1234).

    Returns None when nothing numeric can be recovered.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
        return amount if amount.is_finite() else None

    text = _CURRENCY_RE.sub("", str(value))
    if not text:
        return None

    negative = text.startswith("-") or text.endswith("-") or (
        text.startswith("(") and text.endswith(")")
    )
    text = text.strip("+-()")

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".") if text.count(",") == 1 else text.replace(",", "")
    elif text.count(".") > 1 or re.fullmatch(r"\d{1,3}\.\d{3}", text):
        text = text.replace(".", "")

    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return -amount if negative else amount


def _explicit_sign(original: Any) -> int:
    """+1/-1 when the original text carries an explicit sign, else 0."""
    if not isinstance(original, str):
        return 0
    text = original.strip()
    if text.startswith("-") or text.endswith("-"):
        return -1
    if text.startswith("+"):
        return 1
    return 0


def normalize_date(value: Any) -> str | None:
    """ISO date (YYYY-MM-DD) from the common statement formats, or None."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip().split()[0] if value.strip() else ""
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _clamp_confidence(value: Any, default: float) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(confidence, 0.0), 1.0)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def format_row(row: Any) -> str:
    """Spreadsheet row as one prompt line body (cells joined by ' | ')."""
    if isinstance(row, str):
        return row.strip()
    if isinstance(row, dict):
        cells = [f"{k}: {v}" for k, v in row.items() if v not in (None, "")]
    else:
        cells = [str(c).strip() for c in row if c is not None and str(c).strip()]
    return " | ".join(cells)


class ExtractionInvoker:
    """Extraction stage: raw rows in, ExtractedTransaction items out."""

    stage = Stage.EXTRACTION

    def __init__(
        self,
        client: AIGatewayClient,
        model: str,
        file_name: str = "",
        prompt: ExtractionPrompt | None = None,
    ):
        self.client = client
        self.model = model
        self.file_name = file_name
        self.prompt = prompt or ExtractionPrompt()

    def build_message(self, batch: BatchRecord, rows: Sequence[Any]) -> str:
        start = batch.row_range.start
        lines = [f"[ROW {start + i + 1}] {format_row(row)}" for i, row in enumerate(rows)]
        return self.prompt.format_user_message(
            self.file_name, start + 1, start + len(rows), "\n".join(lines)
        )

    def invoke(
        self, batch: BatchRecord, payload: Sequence[Any], timeout: float
    ) -> list[ExtractedTransaction]:
        try:
            result = self.client.chat(
                self.model,
                self.prompt.system_prompt,
                self.build_message(batch, payload),
                timeout=timeout,
            )
        except AIGatewayError as e:
            raise _stage_error(e, self.stage) from e

        try:
            data = parse_json_response(result.content)
        except ValueError as e:
            raise MalformedResponseError(f"Extraction answer is not JSON: {e}", self.stage) from e

        if isinstance(data, dict):
            raw_items = data.get("transactions")
        else:
            raw_items = data
        if not isinstance(raw_items, list):
            raise MalformedResponseError("Extraction answer has no transactions list", self.stage)

        transactions = []
        for position, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                logger.debug("Ignoring non-object extraction item: %r", raw)
                continue
            tx = self._normalize(batch, position, raw)
            if tx is not None:
                transactions.append(tx)

        logger.debug(
            "Extraction batch %d %s: %d rows -> %d transactions",
            batch.index,
            batch.row_range,
            len(payload),
            len(transactions),
        )
        return transactions

    def _row_number(self, batch: BatchRecord, position: int, raw: dict[str, Any]) -> int | None:
        """0-based file row of an item; the model reports the 1-based [ROW n]."""
        row_range = batch.row_range
        try:
            row = int(raw.get("row_number")) - 1
        except (TypeError, ValueError):
            row = None
        if row is not None and row_range.start <= row < row_range.end:
            return row

        fallback = row_range.start + position
        if row_range.start <= fallback < row_range.end:
            logger.warning(
                "Row number %r outside %s, using position %d",
                raw.get("row_number"),
                row_range,
                fallback,
            )
            return fallback
        return None

    def _normalize(
        self, batch: BatchRecord, position: int, raw: dict[str, Any]
    ) -> ExtractedTransaction | None:
        row_number = self._row_number(batch, position, raw)
        if row_number is None:
            logger.warning("Dropping extraction item outside %s: %r", batch.row_range, raw)
            return None

        needs_review = bool(raw.get("needs_review", False))
        original_amount = _text(raw.get("original_amount"))

        amount = parse_amount(raw.get("amount"))
        if amount is None:
            amount = parse_amount(original_amount)
        if amount is None:
            amount = Decimal("0")
            needs_review = True

        # The bank's explicit sign wins over the model's
        sign = _explicit_sign(original_amount)
        if sign and amount and (amount < 0) != (sign < 0):
            logger.debug("Row %d: restoring sign of %s", row_number, original_amount)
            amount = -amount

        original_date = _text(raw.get("original_date"))
        date = normalize_date(raw.get("date")) or normalize_date(original_date)
        if date is None:
            needs_review = True

        confidence = _clamp_confidence(raw.get("confidence"), DEFAULT_EXTRACTION_CONFIDENCE)

        return ExtractedTransaction(
            row_number=row_number,
            date=date,
            description=_text(raw.get("description")) or "",
            amount=amount,
            original_date=original_date or _text(raw.get("date")),
            original_amount=original_amount,
            balance=parse_amount(raw.get("balance")),
            reference=_text(raw.get("reference")),
            counterparty=_text(raw.get("counterparty")),
            transaction_type=(_text(raw.get("transaction_type")) or "OTHER").upper(),
            channel=_text(raw.get("channel")),
            needs_review=needs_review,
            confidence=confidence,
        )


class CategorizationInvoker:
    """Categorization stage: staged transactions in, CategorizedUpdate items out.

    Every transaction of the batch must come back; a partial answer is
    malformed and fails the whole batch.
    """

    stage = Stage.CATEGORIZATION

    def __init__(
        self,
        client: AIGatewayClient,
        model: str,
        taxonomy: CategoryTaxonomy | None = None,
        prompt: CategorizationPrompt | None = None,
    ):
        self.client = client
        self.model = model
        self.taxonomy = taxonomy or CategoryTaxonomy()
        self.prompt = prompt or CategorizationPrompt()

    @staticmethod
    def format_line(index: int, tx: StagedTransaction) -> str:
        amount = tx.amount
        signed = f"+{amount}" if amount >= 0 else str(amount)
        counterparty = tx.raw_fields.get("counterparty") or "-"
        description = tx.description.replace("|", "/")
        return f"{index}|{signed}|{description}|{counterparty}"

    def invoke(
        self, batch: BatchRecord, payload: Sequence[StagedTransaction], timeout: float
    ) -> list[CategorizedUpdate]:
        transactions = list(payload)
        if not transactions:
            return []

        lines = [self.format_line(i, tx) for i, tx in enumerate(transactions)]
        try:
            result = self.client.chat(
                self.model,
                self.prompt.format_system_prompt(self.taxonomy),
                self.prompt.format_user_message(lines),
                timeout=timeout,
                tools=[self.prompt.tool_definition(self.taxonomy)],
                tool_choice=self.prompt.tool_choice(),
            )
        except AIGatewayError as e:
            raise _stage_error(e, self.stage) from e

        results = self._results(result.tool_arguments, result.content)

        by_index: dict[int, dict[str, Any]] = {}
        for item in results:
            try:
                index = int(item["index"])
            except (KeyError, TypeError, ValueError):
                continue
            if 0 <= index < len(transactions):
                by_index[index] = item

        missing = [i for i in range(len(transactions)) if i not in by_index]
        if missing:
            raise MalformedResponseError(
                f"Categorization answered {len(by_index)} of {len(transactions)} transactions",
                self.stage,
            )

        return [self._update(tx, by_index[i]) for i, tx in enumerate(transactions)]

    def _results(self, tool_arguments: str | None, content: str) -> list[dict[str, Any]]:
        try:
            if tool_arguments:
                data = json.loads(tool_arguments)
            else:
                # Some models answer in the message body despite the forced tool
                data = parse_json_response(content)
        except ValueError as e:
            raise MalformedResponseError(
                f"Categorization answer is not JSON: {e}", self.stage
            ) from e

        if isinstance(data, dict):
            data = data.get("results")
        if not isinstance(data, list):
            raise MalformedResponseError("Categorization answer has no results list", self.stage)
        return [item for item in data if isinstance(item, dict)]

    def _update(self, tx: StagedTransaction, item: dict[str, Any]) -> CategorizedUpdate:
        confidence = _clamp_confidence(item.get("confidence"), 0.0)
        reasoning = (_text(item.get("reasoning")) or "")[:50]

        category = self.taxonomy.match(_text(item.get("categoryCode")))
        if category is None:
            fallback = "DIGER_IN" if tx.amount >= 0 else "DIGER_OUT"
            logger.warning(
                "Unknown category %r for %s, using %s", item.get("categoryCode"), tx.id, fallback
            )
            category = self.taxonomy.get(fallback)
            confidence = min(confidence, UNMATCHED_CATEGORY_CONFIDENCE)
        if category is None:
            raise MalformedResponseError(
                f"Category {item.get('categoryCode')!r} is not in the taxonomy", self.stage
            )

        balance_impact = item.get("balance_impact")
        if balance_impact not in BALANCE_IMPACTS:
            balance_impact = default_balance_impact(category.type, tx.amount)

        return CategorizedUpdate(
            transaction_id=tx.id,
            category_code=category.code,
            category_type=category.type.value,
            confidence=confidence,
            reasoning=reasoning,
            counterparty=_text(item.get("counterparty")),
            affects_pnl=category.affects_pnl,
            balance_impact=balance_impact,
        )


def default_balance_impact(category_type: CategoryType, amount: Decimal) -> str:
    """Balance sheet effect implied by the category type and sign."""
    if category_type == CategoryType.INCOME:
        return "equity_increase"
    if category_type == CategoryType.EXPENSE:
        return "equity_decrease"
    if category_type == CategoryType.PARTNER:
        return "liability_increase" if amount >= 0 else "asset_increase"
    if category_type == CategoryType.INVESTMENT:
        return "asset_increase"
    if category_type == CategoryType.FINANCING:
        return "liability_increase"
    return "none"
