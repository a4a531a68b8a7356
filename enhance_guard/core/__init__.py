"""
Core modules for enhance-guard.

This package contains the credit ledger, frame scoring and cost-aware
provider routing.
"""
