"""Escrow settlement engine for commitments, milestones and holder voting."""

__version__ = "0.1.0"
