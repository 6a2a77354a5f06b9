"""
Core modules for the fulfillment engine.

This package contains the request lifecycle, assignment balancing, quota
accounting, SLA evaluation, and the billing ledger.
"""
