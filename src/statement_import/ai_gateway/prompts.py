"""Prompt templates for statement extraction and transaction categorization.

Prompts are versioned so stored results can be traced to the prompt that
produced them.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from ..schemas.categories import BALANCE_IMPACTS, CategoryTaxonomy, CategoryType

logger = logging.getLogger(__name__)

# v1.1: categorization switched to forced function calling
PROMPT_VERSION = "v1.1"

CATEGORIZATION_TOOL_NAME = "categorize_transactions"


@dataclass
class ExtractionPrompt:
    """Prompt template for turning raw statement rows into transactions.

    Attributes:
        version: Prompt version.
        system_prompt: System message setting LLM behavior.
        user_template: Template for the user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are an expert at reading Turkish bank statements.
Each input line is one spreadsheet row, prefixed with its row number as [ROW n]
and with its cells separated by " | ".

Rules:
1. Return one transaction per row that contains a transaction. Skip header,
   opening balance, closing balance and total rows.
2. row_number is the n of the [ROW n] prefix the transaction came from.
3. date must be YYYY-MM-DD. Copy the date exactly as written into original_date.
4. amount is a number with a dot as decimal separator. Incoming money is
   positive, outgoing money is negative. Turkish statements write 1.234,56 for
   1234.56. Copy the amount exactly as written into original_amount.
5. Keep the description as written, without the cell separators.
6. counterparty is the person or company on the other side, or null.
7. transaction_type is one of EFT, HAVALE, FAST, POS, ATM, FEE, INTEREST,
   TAX, SALARY, OTHER.
8. channel is one of INTERNET, MOBILE, BRANCH, ATM, POS, AUTO or null.
9. Set needs_review to true and lower confidence when a row is ambiguous.

Respond with JSON only:
{
    "transactions": [
        {
            "row_number": 3,
            "date": "2024-01-15",
            "original_date": "15.01.2024",
            "description": "EFT ACME LTD FATURA 123",
            "amount": -1234.56,
            "original_amount": "-1.234,56",
            "balance": 10500.00,
            "reference": "123",
            "counterparty": "ACME LTD",
            "transaction_type": "EFT",
            "channel": "INTERNET",
            "needs_review": false,
            "confidence": 0.95
        }
    ],
    "bank_info": {"bank_name": null, "account_number": null, "currency": "TRY"}
}"""

    user_template: str = """File: {file_name}
Rows {first_row} to {last_row}:

{rows}

Extract the transactions in JSON format."""

    def format_user_message(self, file_name: str, first_row: int, last_row: int, rows: str) -> str:
        """Format user message with the numbered rows of one batch."""
        return self.user_template.format(
            file_name=file_name or "statement",
            first_row=first_row,
            last_row=last_row,
            rows=rows,
        )


@dataclass
class CategorizationPrompt:
    """Prompt template for categorizing a batch of transactions."""

    version: str = PROMPT_VERSION

    system_prompt: str = """You are an accountant categorizing the bank transactions
of a small Turkish consulting company.

Each input line is: index|amount|description|counterparty
Positive amounts are money in, negative amounts are money out.

Available categories (CODE | TYPE | name | keywords):
{categories}

Rules:
1. Return exactly one result per input index.
2. Only use category codes from the list.
3. INCOME codes only for positive amounts, EXPENSE codes only for negative amounts.
4. Transfers between own accounts and cash withdrawals are EXCLUDED.
5. Payments to or from company partners are PARTNER.
6. Keep reasoning under 50 characters.
7. Use a confidence below 0.7 when you are unsure.

Call the {tool_name} function with your results."""

    user_template: str = """Categorize these {count} transactions:

{lines}"""

    def format_system_prompt(self, taxonomy: CategoryTaxonomy) -> str:
        return self.system_prompt.format(
            categories=taxonomy.describe(), tool_name=CATEGORIZATION_TOOL_NAME
        )

    def format_user_message(self, lines: list[str]) -> str:
        return self.user_template.format(count=len(lines), lines="\n".join(lines))

    def tool_definition(self, taxonomy: CategoryTaxonomy) -> dict[str, Any]:
        """Function-calling schema restricted to the taxonomy's codes."""
        return {
            "type": "function",
            "function": {
                "name": CATEGORIZATION_TOOL_NAME,
                "description": "Assign a category to every transaction",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "results": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "index": {"type": "integer"},
                                    "categoryCode": {"type": "string", "enum": taxonomy.codes},
                                    "categoryType": {
                                        "type": "string",
                                        "enum": [t.value for t in CategoryType],
                                    },
                                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                                    "reasoning": {"type": "string", "maxLength": 50},
                                    "counterparty": {"type": ["string", "null"]},
                                    "affects_pnl": {"type": "boolean"},
                                    "balance_impact": {
                                        "type": "string",
                                        "enum": list(BALANCE_IMPACTS),
                                    },
                                },
                                "required": [
                                    "index",
                                    "categoryCode",
                                    "categoryType",
                                    "confidence",
                                    "reasoning",
                                ],
                            },
                        }
                    },
                    "required": ["results"],
                },
            },
        }

    def tool_choice(self) -> dict[str, Any]:
        return {"type": "function", "function": {"name": CATEGORIZATION_TOOL_NAME}}


def _repair_truncated_array(text: str) -> str | None:
    """Close an array cut off mid-object after the last complete element."""
    cut = text.rfind("},")
    if cut == -1:
        return None
    return text[: cut + 1] + "]"


def parse_json_response(content: str) -> Any:
    """Parse JSON from an LLM answer.

    Handles markdown code fences, prose around the JSON, and arrays cut
    off by the token limit (the incomplete last element is dropped).

    Raises:
        ValueError: No JSON could be recovered.
    """
    content = (content or "").strip()
    if not content:
        raise ValueError("Empty response content")

    # Strip markdown code fences
    fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", content, re.DOTALL)
    if fenced:
        content = fenced.group(1).strip()
    elif content.startswith("```"):
        # Opening fence without a closing one (truncated answer)
        content = re.sub(r"^```(?:json)?\s*", "", content)

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    start, end = content.find("{"), content.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(content[start : end + 1])
        except json.JSONDecodeError:
            pass

    start, end = content.find("["), content.rfind("]")
    if start != -1 and end > start:
        try:
            return json.loads(content[start : end + 1])
        except json.JSONDecodeError:
            pass

    array_start = content.find("[")
    if array_start != -1:
        repaired = _repair_truncated_array(content[array_start:])
        if repaired:
            try:
                items = json.loads(repaired)
                logger.warning("Recovered %d items from a truncated JSON array", len(items))
                return items
            except json.JSONDecodeError:
                pass

    raise ValueError(f"No JSON found in response: {content[:200]}")
