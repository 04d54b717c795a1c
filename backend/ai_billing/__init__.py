"""
AI Billing Module
Token metering and payment reconciliation for AppForge

This module provides:
- Token ledger (per-user balance + append-only transaction log)
- Request gate around AI generation calls
- Stripe and Cryptomus payment adapters
- Webhook reconciliation with idempotent grants
- Concurrency-safe atomic debits

Collections used:
- token_usage: Materialized per-user balance
- token_transactions: Immutable transaction log (source of truth)
- payment_intents: One record per checkout attempt
- billing_customers: Stripe customer ids for the billing portal
- token_shortfalls: Post-hoc debit failures for dunning
- billing_meta: Init version stamp
"""

__version__ = "1.0.0"
