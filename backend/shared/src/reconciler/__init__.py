"""Reconciliation of Stripe webhook events into sponsorships, donations and receipts."""
