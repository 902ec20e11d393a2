"""ResearchHub billing backend.

Billing and entitlement engine for the research-study platform: tracks
subscriptions, one-off payments and manual credit purchases, enforces plan
usage limits, retries failed charges and flags risky transactions.

Modules:
    - core: Configuration, database, logging, metrics, Celery setup
    - modules.billing: Billing ledger, entitlements and background sweeps
"""

__version__ = "0.1.0"
