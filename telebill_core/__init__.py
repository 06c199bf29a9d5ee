"""
Telebill
========

Usage-rating and invoicing engine for telecom subscriptions.

This package provides:
- Rate plan catalog and call-type classification
- CDR rating against included-minute allowances
- Proration, GST computation and invoice assembly
- Payment ledger and billing-cycle orchestration
"""

__version__ = "1.0.0"
