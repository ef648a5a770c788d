"""Fee-share rotation for reward tokens."""
