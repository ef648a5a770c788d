"""Failure and vote-reward settlement."""
