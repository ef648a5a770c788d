"""Tests for signed message texts and verification."""

import pytest
from solders.keypair import Keypair

from conftest import sign
from escrow_settlement.chain.signatures import is_valid_pubkey, verify_signature
from escrow_settlement.errors import AuthorizationError, ValidationError
from escrow_settlement.messages import (
    failure_voter_claim_message,
    milestone_claim_message,
    milestone_vote_message,
    require_fresh,
    require_signed,
)


class TestMessages:
    def test_vote_message_layout(self) -> None:
        assert milestone_vote_message("c1", "m1", approve=True) == (
            "Commit To Ship\nMilestone Approval Signal\nCommitment: c1\nMilestone: m1"
        )
        assert "Rejection" in milestone_vote_message("c1", "m1", approve=False)

    def test_claim_message_carries_wallet_and_time(self) -> None:
        text = failure_voter_claim_message("c1", "W", 1700, prefix="Test")
        assert text.splitlines() == ["Test", "Failure Voter Claim", "Commitment: c1", "Wallet: W", "Timestamp: 1700"]


class TestRequireSigned:
    def test_valid_signature(self) -> None:
        keypair = Keypair()
        message = milestone_claim_message("c1", "m1")
        require_signed(message, sign(keypair, message), str(keypair.pubkey()))

    def test_wrong_signer(self) -> None:
        message = milestone_claim_message("c1", "m1")
        with pytest.raises(AuthorizationError):
            require_signed(message, sign(Keypair(), message), str(Keypair().pubkey()))

    def test_different_message(self) -> None:
        keypair = Keypair()
        signature = sign(keypair, milestone_claim_message("c1", "m1"))
        with pytest.raises(AuthorizationError):
            require_signed(milestone_claim_message("c1", "m2"), signature, str(keypair.pubkey()))

    def test_missing_signature(self) -> None:
        with pytest.raises(AuthorizationError):
            require_signed("x", "", str(Keypair().pubkey()))

    def test_malformed_inputs_verify_false(self) -> None:
        assert not verify_signature("x", "not-base58!", str(Keypair().pubkey()))
        assert not verify_signature("x", sign(Keypair(), "x"), "nope")
        assert not is_valid_pubkey("nope")


class TestRequireFresh:
    def test_within_skew(self) -> None:
        require_fresh(1000, 1200, 300)
        require_fresh(1500, 1200, 300)

    def test_expired(self) -> None:
        with pytest.raises(AuthorizationError):
            require_fresh(1000, 1301, 300)

    def test_invalid_timestamp(self) -> None:
        with pytest.raises(ValidationError):
            require_fresh(0, 1200, 300)
