"""Solana JSON-RPC client for balances, time and escrow transfers.

This module provides:
- Retry logic with exponential backoff and failover to a secondary RPC URL
- Optional Redis caching for chain time and immutable transaction lookups
- SOL and SPL token transfers signed locally or by a custodial wallet
- Confirmation polling with a distinct timeout outcome
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from redis.asyncio import Redis
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams
from solders.system_program import transfer as system_transfer
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_idempotent_associated_token_account,
    transfer_checked,
)
from spl.token.models import TransferCheckedParams

from escrow_settlement.chain.signatures import verify_signature
from escrow_settlement.config import SolanaSettings
from escrow_settlement.errors import ConfigurationError, DependencyError, TransferTimeoutError, ValidationError
from escrow_settlement.signing.custodial import CustodialSigner
from escrow_settlement.signing.vault import CustodialWallet, LocalKey, SignerRef

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.25
DEFAULT_CONFIRM_TIMEOUT_SECONDS = 60.0
CONFIRM_POLL_INTERVAL_SECONDS = 1.2
DEFAULT_SIGNATURE_FEE_LAMPORTS = 5000
DEFAULT_REQUEST_TIMEOUT = 30

# Chain time changes every slot; finalized transactions never change.
CHAIN_TIME_CACHE_TTL_SECONDS = 2
TRANSACTION_CACHE_TTL_SECONDS = 24 * 3600

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


class RPCError(DependencyError):
    """Raised when an RPC call fails."""


class RPCUnavailableError(RPCError):
    """Raised when no endpoint answered after all retries."""


class BlockhashExpiredError(RPCError):
    """Raised when a transaction's blockhash is no longer valid."""


class TransactionFailedError(DependencyError):
    """Raised when a submitted transaction landed with an error."""


@dataclass(frozen=True)
class MintInfo:
    mint: str
    decimals: int
    token_program: str


class ChainClient(Protocol):
    """Capabilities the engine consumes from the chain."""

    async def get_balance(self, pubkey: str) -> int: ...

    async def get_current_time(self) -> int: ...

    async def transfer_fee(self, signer: SignerRef, *, from_pubkey: str) -> int: ...

    async def transfer(
        self,
        signer: SignerRef,
        *,
        from_pubkey: str,
        to_pubkey: str,
        amount: int,
    ) -> str: ...

    async def transfer_token(
        self,
        signer: SignerRef,
        *,
        owner_pubkey: str,
        to_pubkey: str,
        mint: MintInfo,
        amount: int,
    ) -> str: ...

    async def get_token_mint_info(self, mint: str) -> MintInfo: ...

    async def find_transfer_signature(
        self,
        *,
        from_pubkey: str,
        to_pubkey: str,
        amount: int,
        min_block_time: int,
        max_transactions: int = 50,
        mint: MintInfo | None = None,
    ) -> str | None: ...

    def verify_signature(self, message: str, signature_b58: str, pubkey_b58: str) -> bool: ...


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def _pubkey(value: str, field_name: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {field_name}", value=value) from e


def _parsed_instructions(tx: dict[str, Any]) -> list[dict[str, Any]]:
    message = (tx.get("transaction") or {}).get("message") or {}
    out = list(message.get("instructions") or [])
    for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
        out.extend(inner.get("instructions") or [])
    return [ix for ix in out if isinstance(ix, dict) and isinstance(ix.get("parsed"), dict)]


class SolanaRpcClient:
    """Solana RPC client with retries, failover and caching.

    Example:
        ```python
        client = SolanaRpcClient(
            rpc_url="https://api.mainnet-beta.solana.com",
            fallback_rpc_url="https://solana-rpc.publicnode.com",
            custodial_signer=PrivySigner.from_settings(settings.custodial),
        )
        balance = await client.get_balance(escrow_pubkey)
        fee = await client.transfer_fee(signer, from_pubkey=escrow_pubkey)
        sig = await client.transfer(signer, from_pubkey=escrow_pubkey, to_pubkey=dest, amount=balance - fee)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        commitment: str = "confirmed",
        redis: Redis | None = None,
        custodial_signer: CustodialSigner | None = None,
        fee_payer: Keypair | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        confirm_timeout_seconds: float = DEFAULT_CONFIRM_TIMEOUT_SECONDS,
        poll_interval_seconds: float = CONFIRM_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._commitment = commitment
        self._redis = redis
        self._custodial = custodial_signer
        self._fee_payer = fee_payer
        self._client = http_client or httpx.AsyncClient(timeout=DEFAULT_REQUEST_TIMEOUT)
        self._owns_client = http_client is None
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._confirm_timeout = confirm_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._request_id = 0

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "solana:"

    @classmethod
    def from_settings(
        cls,
        settings: SolanaSettings,
        *,
        redis: Redis | None = None,
        custodial_signer: CustodialSigner | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> SolanaRpcClient:
        fee_payer = None
        if settings.fee_payer_secret_key is not None:
            try:
                fee_payer = Keypair.from_base58_string(settings.fee_payer_secret_key.get_secret_value())
            except ValueError as e:
                raise ConfigurationError("SOLANA_FEE_PAYER_SECRET_KEY is not a valid keypair") from e
        return cls(
            settings.rpc_url,
            fallback_rpc_url=settings.fallback_rpc_url,
            commitment=settings.commitment,
            redis=redis,
            custodial_signer=custodial_signer,
            fee_payer=fee_payer,
            http_client=http_client,
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            confirm_timeout_seconds=settings.confirm_timeout_seconds,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # Cache helpers

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(self._cache_prefix + key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(self._cache_prefix + key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    # Transport

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _post(self, url: str, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        response = await self._client.post(url, json=payload)
        response.raise_for_status()
        body = response.json()
        error = body.get("error")
        if error:
            message = str(error.get("message", error)) if isinstance(error, dict) else str(error)
            if "blockhash not found" in message.lower():
                raise BlockhashExpiredError(f"{method}: {message}")
            raise RPCError(f"{method}: {message}", rpc_error=error)
        return body.get("result")

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        """Execute an RPC call with retry and failover logic.

        Transport failures are retried; JSON-RPC errors are returned by the
        node itself and are not.

        Raises:
            RPCUnavailableError: If all retries and failover fail.
        """
        last_error: Exception | None = None
        urls: list[tuple[str, str]] = []
        if self._should_try_primary():
            urls.append(("Primary", self._rpc_url))
        if self._fallback_rpc_url:
            urls.append(("Fallback", self._fallback_rpc_url))

        for label, url in urls:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    result = await self._post(url, method, params)
                    if label == "Primary":
                        self._primary_healthy = True
                    else:
                        logger.info("Fallback RPC succeeded for %s", method)
                    return result
                except (httpx.TransportError, httpx.HTTPStatusError) as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        label,
                        method,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2
            if label == "Primary":
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        raise RPCUnavailableError(f"RPC call {method} failed after all retries: {last_error}")

    # Reads

    async def get_balance(self, pubkey: str) -> int:
        result = await self._rpc("getBalance", [pubkey, {"commitment": self._commitment}])
        return int((result or {}).get("value") or 0)

    async def get_current_time(self) -> int:
        """Unix time of the latest slot, falling back to the wall clock."""
        cached = await self._get_cached("time")
        if cached is not None:
            return int(cached)

        now: int | None = None
        try:
            slot = await self._rpc("getSlot", [{"commitment": self._commitment}])
            block_time = await self._rpc("getBlockTime", [int(slot)])
            if isinstance(block_time, int) and block_time > 0:
                now = block_time
        except RPCError as e:
            logger.warning("Chain time unavailable, using wall clock: %s", e)
        if now is None:
            now = int(time.time())

        await self._set_cached("time", str(now), CHAIN_TIME_CACHE_TTL_SECONDS)
        return now

    async def get_token_mint_info(self, mint: str) -> MintInfo:
        result = await self._rpc("getAccountInfo", [mint, {"encoding": "jsonParsed"}])
        value = (result or {}).get("value")
        if not value:
            raise RPCError("Mint account not found", mint=mint)
        parsed = ((value.get("data") or {}).get("parsed") or {}).get("info") or {}
        decimals = parsed.get("decimals")
        if not isinstance(decimals, int):
            raise RPCError("Account is not a token mint", mint=mint)
        return MintInfo(mint=mint, decimals=decimals, token_program=str(value.get("owner") or TOKEN_PROGRAM_ID))

    async def _get_latest_blockhash(self) -> Hash:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self._commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        cached = await self._get_cached(f"tx:{signature}")
        if cached is not None:
            tx: dict[str, Any] = json.loads(cached)
            return tx
        result = await self._rpc(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"}],
        )
        if result:
            await self._set_cached(f"tx:{signature}", json.dumps(result), TRANSACTION_CACHE_TTL_SECONDS)
        return result or None

    async def find_transfer_signature(
        self,
        *,
        from_pubkey: str,
        to_pubkey: str,
        amount: int,
        min_block_time: int,
        max_transactions: int = 50,
        mint: MintInfo | None = None,
    ) -> str | None:
        """Look for an already landed transfer matching (from, to, amount).

        Used before resubmitting a transfer whose outcome is unknown.
        """
        signatures = await self._rpc(
            "getSignaturesForAddress", [from_pubkey, {"limit": max(1, min(max_transactions, 1000))}]
        )
        destination = to_pubkey
        if mint is not None:
            destination = str(
                associated_token_address(
                    Pubkey.from_string(to_pubkey),
                    Pubkey.from_string(mint.mint),
                    Pubkey.from_string(mint.token_program),
                )
            )

        for entry in signatures or []:
            if entry.get("err") is not None:
                continue
            block_time = entry.get("blockTime")
            if isinstance(block_time, int) and block_time < min_block_time:
                break
            tx = await self.get_transaction(entry["signature"])
            if tx is None or (tx.get("meta") or {}).get("err") is not None:
                continue
            for ix in _parsed_instructions(tx):
                parsed = ix["parsed"]
                info = parsed.get("info") or {}
                if mint is None:
                    if (
                        parsed.get("type") == "transfer"
                        and info.get("source") == from_pubkey
                        and info.get("destination") == destination
                        and int(info.get("lamports") or -1) == amount
                    ):
                        return str(entry["signature"])
                elif (
                    parsed.get("type") == "transferChecked"
                    and info.get("authority") == from_pubkey
                    and info.get("destination") == destination
                    and info.get("mint") == mint.mint
                    and int((info.get("tokenAmount") or {}).get("amount") or -1) == amount
                ):
                    return str(entry["signature"])
        return None

    def verify_signature(self, message: str, signature_b58: str, pubkey_b58: str) -> bool:
        return verify_signature(message, signature_b58, pubkey_b58)

    # Writes

    async def transfer(
        self,
        signer: SignerRef,
        *,
        from_pubkey: str,
        to_pubkey: str,
        amount: int,
    ) -> str:
        """Send ``amount`` lamports and wait for confirmation.

        Raises:
            TransferTimeoutError: Submitted but unconfirmed, either past the deadline
                or because the RPC failed after the send.
            TransactionFailedError: The transaction landed with an error.
        """
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive", amount=amount)
        source = _pubkey(from_pubkey, "from_pubkey")
        ix = system_transfer(TransferParams(from_pubkey=source, to_pubkey=_pubkey(to_pubkey, "to_pubkey"), lamports=amount))
        signature = await self._sign_and_send(signer, source, [ix])
        logger.info("Transferred %d lamports %s -> %s (%s)", amount, from_pubkey, to_pubkey, signature)
        return signature

    async def transfer_token(
        self,
        signer: SignerRef,
        *,
        owner_pubkey: str,
        to_pubkey: str,
        mint: MintInfo,
        amount: int,
    ) -> str:
        """Send ``amount`` raw token units, creating the recipient's token account if needed."""
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive", amount=amount)
        owner = _pubkey(owner_pubkey, "owner_pubkey")
        recipient = _pubkey(to_pubkey, "to_pubkey")
        mint_key = _pubkey(mint.mint, "mint")
        program = _pubkey(mint.token_program, "token_program")
        payer = self._payer_for(signer, owner)

        instructions = [
            create_idempotent_associated_token_account(payer, recipient, mint_key, token_program_id=program),
            transfer_checked(
                TransferCheckedParams(
                    program_id=program,
                    source=associated_token_address(owner, mint_key, program),
                    mint=mint_key,
                    dest=associated_token_address(recipient, mint_key, program),
                    owner=owner,
                    amount=amount,
                    decimals=mint.decimals,
                )
            ),
        ]
        signature = await self._sign_and_send(signer, owner, instructions)
        logger.info("Transferred %d units of %s %s -> %s (%s)", amount, mint.mint, owner_pubkey, to_pubkey, signature)
        return signature

    def _payer_for(self, signer: SignerRef, owner: Pubkey) -> Pubkey:
        if isinstance(signer, LocalKey) and self._fee_payer is not None:
            return self._fee_payer.pubkey()
        return owner

    async def _sign_and_send(self, signer: SignerRef, owner: Pubkey, instructions: list[Instruction]) -> str:
        payer = self._payer_for(signer, owner)
        blockhash = await self._get_latest_blockhash()
        message = Message.new_with_blockhash(instructions, payer, blockhash)

        if isinstance(signer, LocalKey):
            keypair = signer.keypair()
            if keypair.pubkey() != owner:
                raise ConfigurationError("Signer key does not control the source account", owner=str(owner))
            keypairs = [keypair]
            if self._fee_payer is not None and payer == self._fee_payer.pubkey():
                keypairs = [self._fee_payer, keypair]
            tx = Transaction(keypairs, message, blockhash)
        elif isinstance(signer, CustodialWallet):
            if self._custodial is None:
                raise ConfigurationError("Custodial signer is not configured")
            unsigned = Transaction.new_unsigned(message)
            tx = Transaction.from_bytes(await self._custodial.sign(signer.wallet_id, bytes(unsigned)))
        else:
            raise ConfigurationError(f"Unsupported signer: {type(signer).__name__}")

        signature = str(tx.signatures[0])
        encoded = base64.b64encode(bytes(tx)).decode("ascii")
        # Resending the same signed bytes cannot double-spend, so the send itself retries.
        try:
            await self._rpc(
                "sendTransaction",
                [encoded, {"encoding": "base64", "preflightCommitment": self._commitment}],
            )
        except RPCUnavailableError as e:
            # The node may have accepted the transaction before the connection dropped.
            raise TransferTimeoutError(
                "Transfer submission outcome unknown", signature=signature, cause=str(e)
            ) from e
        try:
            await self.confirm_signature(signature)
        except RPCError as e:
            raise TransferTimeoutError(
                "Transfer sent but confirmation failed", signature=signature, cause=str(e)
            ) from e
        return signature

    async def transfer_fee(self, signer: SignerRef, *, from_pubkey: str) -> int:
        """Lamports ``from_pubkey`` pays in fees for one transfer.

        Zero when a separate fee payer covers the fee.
        """
        source = _pubkey(from_pubkey, "from_pubkey")
        payer = self._payer_for(signer, source)
        if payer != source:
            return 0
        ix = system_transfer(TransferParams(from_pubkey=source, to_pubkey=source, lamports=1))
        message = Message.new_with_blockhash([ix], payer, await self._get_latest_blockhash())
        encoded = base64.b64encode(bytes(message)).decode("ascii")
        result = await self._rpc("getFeeForMessage", [encoded, {"commitment": self._commitment}])
        fee = (result or {}).get("value")
        if not isinstance(fee, int):
            logger.warning("Fee for message unavailable, assuming %d lamports", DEFAULT_SIGNATURE_FEE_LAMPORTS)
            return DEFAULT_SIGNATURE_FEE_LAMPORTS
        return fee

    async def confirm_signature(self, signature: str) -> None:
        """Poll until ``signature`` reaches the configured commitment.

        Raises:
            TransferTimeoutError: If the deadline passes first.
            TransactionFailedError: If the transaction failed on chain.
        """
        wanted = _COMMITMENT_RANK.get(self._commitment, 1)
        deadline = time.monotonic() + self._confirm_timeout
        while True:
            result = await self._rpc("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
            status = ((result or {}).get("value") or [None])[0]
            if status:
                if status.get("err") is not None:
                    raise TransactionFailedError("Transaction failed on chain", signature=signature, err=status["err"])
                level = _COMMITMENT_RANK.get(str(status.get("confirmationStatus")), -1)
                if level >= wanted:
                    return
            if time.monotonic() >= deadline:
                raise TransferTimeoutError("Transfer not confirmed before timeout", signature=signature)
            await asyncio.sleep(self._poll_interval)
