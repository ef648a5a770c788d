"""Integer pot splitting."""
