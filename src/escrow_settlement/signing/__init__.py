"""Escrow signer material and custodial signing."""
