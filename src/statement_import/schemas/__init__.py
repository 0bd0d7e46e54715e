"""
SSOT (Single Source of Truth) schemas for the import pipeline.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .categories import (
    BALANCE_IMPACTS,
    DEFAULT_CATEGORIES,
    Category,
    CategoryTaxonomy,
    CategoryType,
)
from .dedupe import (
    HASH_PREFIX_LENGTH,
    compute_file_hash,
    generate_transaction_id,
    parse_row_number,
)
from .session import (
    ALLOWED_TRANSITIONS,
    BatchRecord,
    BatchStatus,
    CategorizedUpdate,
    ExtractedTransaction,
    FailedBatchRecord,
    ImportSession,
    InvalidTransitionError,
    RowRange,
    SessionStatus,
    SessionSummary,
    Stage,
    StagedTransaction,
    check_transition,
)

__all__ = [
    # Session model
    "ImportSession",
    "SessionStatus",
    "SessionSummary",
    "Stage",
    "BatchRecord",
    "BatchStatus",
    "RowRange",
    "StagedTransaction",
    "FailedBatchRecord",
    "ExtractedTransaction",
    "CategorizedUpdate",
    # State machine
    "ALLOWED_TRANSITIONS",
    "InvalidTransitionError",
    "check_transition",
    # Categories
    "BALANCE_IMPACTS",
    "DEFAULT_CATEGORIES",
    "Category",
    "CategoryTaxonomy",
    "CategoryType",
    # Dedupe
    "HASH_PREFIX_LENGTH",
    "compute_file_hash",
    "generate_transaction_id",
    "parse_row_number",
]
