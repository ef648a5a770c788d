"""Commitments, milestones and their state machines."""
