"""Application modules.

- billing: ledger records, usage metering, payment retries, fraud review,
  subscription lifecycle and the manual credit workflow
"""
