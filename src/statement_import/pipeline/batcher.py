"""
Row batcher.

Splits the parsed spreadsheet rows into contiguous, non-overlapping
half-open row ranges. Deterministic for a given row count and batch size,
so a resumed session reproduces the batch boundaries of the original run.
"""

from collections.abc import Sequence
from typing import Any

from ..schemas.session import BatchRecord, RowRange, Stage


class InvalidInput(ValueError):
    """Raised for unusable pipeline input (empty file, bad batch size, ...)."""

    pass


def split_range(total_rows: int, batch_size: int) -> list[RowRange]:
    """Row ranges covering [0, total_rows) in chunks of batch_size."""
    if batch_size <= 0:
        raise InvalidInput(f"batch_size must be > 0, got: {batch_size}")
    if total_rows <= 0:
        raise InvalidInput("Cannot split an empty row sequence")
    return [
        RowRange(start, min(start + batch_size, total_rows))
        for start in range(0, total_rows, batch_size)
    ]


def split(
    rows: Sequence[Any], batch_size: int, stage: Stage = Stage.EXTRACTION
) -> list[BatchRecord]:
    """
    Split rows into pending batches.

    Args:
        rows: Complete parsed row sequence
        batch_size: Rows per batch (the last batch may be smaller)
        stage: Stage the batch records are created for

    Returns:
        ceil(len(rows) / batch_size) batches in row order

    Raises:
        InvalidInput: batch_size <= 0 or rows is empty
    """
    return [
        BatchRecord(index=i, row_range=row_range, stage=stage)
        for i, row_range in enumerate(split_range(len(rows), batch_size))
    ]
