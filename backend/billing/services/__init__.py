"""Billing services: Stripe gateway, event dispatch, ledger and plan synchronization."""
