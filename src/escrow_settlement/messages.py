"""Texts that wallets sign to authorize engine actions.

Every message starts with a configurable prefix line. Claim messages embed
a unix timestamp and are only accepted within a freshness window.
"""

from __future__ import annotations

from escrow_settlement.chain.signatures import verify_signature
from escrow_settlement.errors import AuthorizationError, ValidationError

DEFAULT_PREFIX = "Commit To Ship"


def milestone_completion_message(commitment_id: str, milestone_id: str, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}\nMilestone Completion\nCommitment: {commitment_id}\nMilestone: {milestone_id}"


def milestone_vote_message(
    commitment_id: str, milestone_id: str, *, approve: bool, prefix: str = DEFAULT_PREFIX
) -> str:
    label = "Milestone Approval Signal" if approve else "Milestone Rejection Signal"
    return f"{prefix}\n{label}\nCommitment: {commitment_id}\nMilestone: {milestone_id}"


def milestone_claim_message(commitment_id: str, milestone_id: str, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}\nMilestone Claim\nCommitment: {commitment_id}\nMilestone: {milestone_id}"


def failure_voter_claim_message(
    commitment_id: str, wallet: str, timestamp_unix: int, prefix: str = DEFAULT_PREFIX
) -> str:
    return (
        f"{prefix}\nFailure Voter Claim\nCommitment: {commitment_id}\n"
        f"Wallet: {wallet}\nTimestamp: {timestamp_unix}"
    )


def milestone_failure_voter_claim_message(
    commitment_id: str,
    milestone_id: str,
    wallet: str,
    timestamp_unix: int,
    prefix: str = DEFAULT_PREFIX,
) -> str:
    return (
        f"{prefix}\nMilestone Failure Voter Claim\nCommitment: {commitment_id}\n"
        f"Milestone: {milestone_id}\nWallet: {wallet}\nTimestamp: {timestamp_unix}"
    )


def vote_reward_claim_message(
    commitment_id: str,
    milestone_id: str,
    wallet: str,
    timestamp_unix: int,
    prefix: str = DEFAULT_PREFIX,
) -> str:
    return (
        f"{prefix}\nVote Reward Claim\nCommitment: {commitment_id}\n"
        f"Milestone: {milestone_id}\nWallet: {wallet}\nTimestamp: {timestamp_unix}"
    )


def require_fresh(timestamp_unix: int, now_unix: int, max_skew_seconds: int) -> None:
    """Reject timestamps further than ``max_skew_seconds`` from now."""
    if timestamp_unix <= 0:
        raise ValidationError("Invalid timestamp")
    if abs(now_unix - timestamp_unix) > max_skew_seconds:
        raise AuthorizationError("Signed message expired", timestamp=timestamp_unix, now=now_unix)


def require_signed(message: str, signature_b58: str, signer_pubkey: str) -> None:
    """Raise AuthorizationError unless ``signer_pubkey`` signed ``message``."""
    if not signature_b58:
        raise AuthorizationError("Missing signature")
    if not verify_signature(message, signature_b58, signer_pubkey):
        raise AuthorizationError("Invalid signature")
