"""Holder votes, tallies and eligibility."""
