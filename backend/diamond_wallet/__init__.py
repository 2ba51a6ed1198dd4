"""
Diamond Wallet Module
Per-user diamond balance ledger for SOGAN gated features

This module provides:
- Lazy account creation (get-or-create on first reference)
- Cost-gated consumption with idempotent retries
- Daily refill up to a ceiling, once per calendar day
- Purchase and manual grants without the refill ceiling
- Append-only transaction log for history, idempotency and audits
- Client cache facade for optimistic affordability checks

Collections used:
- diamond_accounts: One balance record per user
- diamond_transactions: Immutable transaction log
- diamond_wallet_meta: Init version stamp
"""

__version__ = "1.0.0"
