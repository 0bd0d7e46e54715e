"""
Bank statement spreadsheet → AI extraction → AI categorization → Review → Ledger

A resumable, batch-oriented import pipeline that turns raw bank statement rows
into reviewed, categorized transactions. Batches are tracked individually so a
failed or interrupted run never loses completed work.
"""

__version__ = "0.1.0"
