"""Custodial wallet signing through the Privy wallet RPC API.

Requests are authenticated with HTTP basic auth (app id / app secret) and,
when authorization keys are configured, an ECDSA P-256 signature over the
canonical JSON form of the request. Every call carries an idempotency key so
a retried request cannot produce a second signature.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from typing import Any, Protocol

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from escrow_settlement.chain.retry import RetryError, with_retry
from escrow_settlement.config import CustodialSettings
from escrow_settlement.errors import ConfigurationError, DependencyError, DependencyTimeoutError

logger = logging.getLogger(__name__)

AUTH_KEY_PREFIX = "wallet-auth:"
DEFAULT_TIMEOUT_SECONDS = 20.0


class CustodialSigner(Protocol):
    """Signs serialized transactions with a wallet held by a custodial service."""

    async def sign(self, wallet_id: str, tx_bytes: bytes) -> bytes: ...


class CustodialSignerError(DependencyError):
    """Raised when the custodial signing service rejects or fails a request."""


class _RetryableResponse(Exception):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body[:200]}")
        self.status_code = status_code


def canonical_json(value: Any) -> str:
    """Deterministic JSON with sorted keys and no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def load_authorization_keys(raw: str) -> list[ec.EllipticCurvePrivateKey]:
    """Parse comma-separated ``wallet-auth:<base64 PKCS#8 DER>`` keys."""
    keys: list[ec.EllipticCurvePrivateKey] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith(AUTH_KEY_PREFIX):
            part = part[len(AUTH_KEY_PREFIX) :]
        try:
            key = serialization.load_der_private_key(base64.b64decode(part), password=None)
        except ValueError as e:
            raise ConfigurationError("Invalid PRIVY_AUTHORIZATION_PRIVATE_KEYS entry") from e
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ConfigurationError("Authorization keys must be P-256 EC keys")
        keys.append(key)
    return keys


def authorization_signature(
    keys: list[ec.EllipticCurvePrivateKey],
    *,
    method: str,
    url: str,
    body: dict[str, Any],
    headers: dict[str, str],
) -> str:
    payload = canonical_json(
        {
            "version": 1,
            "method": method,
            "url": url,
            "body": body,
            "headers": headers,
        }
    ).encode("utf-8")
    signatures = [base64.b64encode(k.sign(payload, ec.ECDSA(hashes.SHA256()))).decode("ascii") for k in keys]
    return ",".join(signatures)


def _extract_signed_transaction(payload: dict[str, Any]) -> str | None:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    for key in ("signed_transaction", "signedTransaction", "transaction"):
        value = data.get(key) if isinstance(data, dict) else None
        if isinstance(value, str) and value:
            return value
    return None


class PrivySigner:
    """Privy implementation of :class:`CustodialSigner`.

    Example:
        ```python
        signer = PrivySigner.from_settings(settings.custodial)
        signed = await signer.sign(wallet_id, bytes(unsigned_tx))
        ```
    """

    def __init__(
        self,
        *,
        app_id: str,
        app_secret: str,
        api_base_url: str = "https://api.privy.io",
        authorization_keys: list[ec.EllipticCurvePrivateKey] | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int = 3,
        retry_delay_seconds: float = 0.25,
    ) -> None:
        self._app_id = app_id
        self._basic = base64.b64encode(f"{app_id}:{app_secret}".encode()).decode("ascii")
        self._base_url = api_base_url.rstrip("/")
        self._keys = authorization_keys or []
        self._client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self._owns_client = http_client is None
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

    @classmethod
    def from_settings(cls, settings: CustodialSettings, **kwargs: Any) -> PrivySigner:
        if not settings.enabled or settings.app_id is None or settings.app_secret is None:
            raise ConfigurationError("PRIVY_APP_ID and PRIVY_APP_SECRET are required for custodial signing")
        keys: list[ec.EllipticCurvePrivateKey] = []
        if settings.authorization_private_keys is not None:
            keys = load_authorization_keys(settings.authorization_private_keys.get_secret_value())
        return cls(
            app_id=settings.app_id,
            app_secret=settings.app_secret.get_secret_value(),
            api_base_url=settings.api_base_url,
            authorization_keys=keys,
            **kwargs,
        )

    async def sign(self, wallet_id: str, tx_bytes: bytes) -> bytes:
        """Ask the custodial service to sign a serialized transaction.

        Raises:
            CustodialSignerError: If the service rejects the request.
            DependencyTimeoutError: If the service keeps timing out.
        """
        url = f"{self._base_url}/v1/wallets/{wallet_id}/rpc"
        body = {
            "method": "signTransaction",
            "params": {"transaction": base64.b64encode(tx_bytes).decode("ascii"), "encoding": "base64"},
        }
        idempotency_key = hashlib.sha256(wallet_id.encode() + b":" + tx_bytes).hexdigest()
        headers = {
            "Authorization": f"Basic {self._basic}",
            "privy-app-id": self._app_id,
            "privy-idempotency-key": idempotency_key,
            "Content-Type": "application/json",
        }
        if self._keys:
            headers["privy-authorization-signature"] = authorization_signature(
                self._keys,
                method="POST",
                url=url,
                body=body,
                headers={"privy-app-id": self._app_id, "privy-idempotency-key": idempotency_key},
            )

        @with_retry(
            max_attempts=self._max_retries,
            base_delay=self._retry_delay,
            retry_on=(httpx.TransportError, _RetryableResponse),
        )
        async def _post() -> dict[str, Any]:
            response = await self._client.post(url, content=canonical_json(body), headers=headers)
            if response.status_code == 429 or response.status_code >= 500:
                raise _RetryableResponse(response.status_code, response.text)
            if response.status_code >= 400:
                raise CustodialSignerError(
                    f"Custodial signer rejected request ({response.status_code})",
                    wallet_id=wallet_id,
                )
            result: dict[str, Any] = response.json()
            return result

        try:
            payload = await _post()
        except RetryError as e:
            if isinstance(e.last_exception, httpx.TimeoutException):
                raise DependencyTimeoutError("Custodial signer timed out", wallet_id=wallet_id) from e
            raise CustodialSignerError("Custodial signer unavailable", wallet_id=wallet_id) from e

        signed = _extract_signed_transaction(payload)
        if signed is None:
            raise CustodialSignerError("Custodial signer returned no transaction", wallet_id=wallet_id)
        logger.info("Custodial wallet %s signed transaction", wallet_id)
        return base64.b64decode(signed)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
