"""Idempotent payout claims."""
