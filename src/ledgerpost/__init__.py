"""
Uploaded document → extraction → accounting mapping → ledger posting

A deterministic, testable pipeline that drives uploaded invoices and receipts
through extraction and accounting-field mapping, with an explainable GL rule
engine, confidence-based auto-apply and an append-only audit trail.
"""

__version__ = "0.1.0"
