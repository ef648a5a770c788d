"""Tests for the Solana JSON-RPC client."""

import json
from typing import Any

import httpx
import pytest
from solders.hash import Hash
from solders.keypair import Keypair

from conftest import NOW, new_pubkey
from escrow_settlement.chain.client import (
    DEFAULT_SIGNATURE_FEE_LAMPORTS,
    RPCError,
    SolanaRpcClient,
    TransactionFailedError,
)
from escrow_settlement.errors import ConfigurationError, TransferTimeoutError, ValidationError
from escrow_settlement.signing.vault import generate_escrow

PRIMARY = "https://primary.test"
FALLBACK = "https://fallback.test"


class RpcServer:
    """Answers JSON-RPC calls by method name and records them per host."""

    def __init__(self, results: dict[str, Any], *, down: set[str] | None = None) -> None:
        self.results = results
        self.down = down or set()
        self.failing_methods: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        host = request.url.host
        self.calls.append((host, body["method"]))
        if host in self.down or body["method"] in self.failing_methods:
            return httpx.Response(503, text="unavailable")
        result = self.results.get(body["method"])
        if callable(result):
            result = result(body["params"])
        if isinstance(result, RpcFault):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": result.error})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


class RpcFault:
    def __init__(self, message: str) -> None:
        self.error = {"code": -32000, "message": message}


def client(server: RpcServer, **kwargs: Any) -> SolanaRpcClient:
    kwargs.setdefault("retry_delay_seconds", 0.0)
    return SolanaRpcClient(
        PRIMARY,
        fallback_rpc_url=FALLBACK,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
        **kwargs,
    )


def transfer_tx(source: str, destination: str, lamports: int) -> dict[str, Any]:
    return {
        "meta": {"err": None, "innerInstructions": []},
        "transaction": {
            "message": {
                "instructions": [
                    {
                        "program": "system",
                        "parsed": {
                            "type": "transfer",
                            "info": {"source": source, "destination": destination, "lamports": lamports},
                        },
                    }
                ]
            }
        },
    }


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    async def test_get_balance(self) -> None:
        server = RpcServer({"getBalance": {"context": {"slot": 1}, "value": 42}})
        assert await client(server).get_balance(new_pubkey()) == 42

    async def test_current_time_from_block(self) -> None:
        server = RpcServer({"getSlot": 900, "getBlockTime": lambda params: NOW if params == [900] else None})
        assert await client(server).get_current_time() == NOW

    async def test_current_time_falls_back_to_wall_clock(self) -> None:
        server = RpcServer({"getSlot": RpcFault("slot unavailable")})
        assert await client(server).get_current_time() > NOW

    async def test_mint_info(self) -> None:
        owner = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
        server = RpcServer(
            {"getAccountInfo": {"value": {"owner": owner, "data": {"parsed": {"info": {"decimals": 9}}}}}}
        )
        info = await client(server).get_token_mint_info("mint-1")
        assert (info.decimals, info.token_program) == (9, owner)

    async def test_non_mint_account(self) -> None:
        server = RpcServer({"getAccountInfo": {"value": {"owner": "x", "data": {"parsed": {"info": {}}}}}})
        with pytest.raises(RPCError):
            await client(server).get_token_mint_info("not-a-mint")


class TestFailover:
    async def test_primary_down_uses_fallback(self) -> None:
        server = RpcServer({"getBalance": {"value": 7}}, down={"primary.test"})
        rpc = client(server, max_retries=2)

        assert await rpc.get_balance(new_pubkey()) == 7
        assert server.calls == [
            ("primary.test", "getBalance"),
            ("primary.test", "getBalance"),
            ("fallback.test", "getBalance"),
        ]

        # An unhealthy primary is skipped until its recovery interval passes.
        await rpc.get_balance(new_pubkey())
        assert server.calls[-1] == ("fallback.test", "getBalance")
        assert len(server.calls) == 4

    async def test_all_endpoints_down(self) -> None:
        server = RpcServer({}, down={"primary.test", "fallback.test"})
        with pytest.raises(RPCError):
            await client(server, max_retries=1).get_balance(new_pubkey())

    async def test_node_errors_are_not_retried(self) -> None:
        server = RpcServer({"getBalance": RpcFault("invalid param")})
        with pytest.raises(RPCError, match="invalid param"):
            await client(server).get_balance("bad")
        assert server.calls == [("primary.test", "getBalance")]


# ============================================================================
# Transfer recovery
# ============================================================================


class TestFindTransferSignature:
    async def test_finds_matching_transfer(self) -> None:
        source, dest = new_pubkey(), new_pubkey()
        txs = {
            "s-old": transfer_tx(source, dest, 5),
            "s-match": transfer_tx(source, dest, 10),
        }
        server = RpcServer(
            {
                "getSignaturesForAddress": [
                    {"signature": "s-failed", "err": {"x": 1}, "blockTime": NOW + 30},
                    {"signature": "s-old", "err": None, "blockTime": NOW + 20},
                    {"signature": "s-match", "err": None, "blockTime": NOW + 10},
                ],
                "getTransaction": lambda params: txs.get(params[0]),
            }
        )
        found = await client(server).find_transfer_signature(
            from_pubkey=source, to_pubkey=dest, amount=10, min_block_time=NOW
        )
        assert found == "s-match"

    async def test_stops_before_min_block_time(self) -> None:
        source, dest = new_pubkey(), new_pubkey()
        server = RpcServer(
            {
                "getSignaturesForAddress": [{"signature": "s1", "err": None, "blockTime": NOW - 1}],
                "getTransaction": lambda params: transfer_tx(source, dest, 10),
            }
        )
        found = await client(server).find_transfer_signature(
            from_pubkey=source, to_pubkey=dest, amount=10, min_block_time=NOW
        )
        assert found is None
        assert ("primary.test", "getTransaction") not in server.calls


# ============================================================================
# Transfers
# ============================================================================


class TestTransfer:
    def _server(self, status: Any) -> RpcServer:
        return RpcServer(
            {
                "getLatestBlockhash": {"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 1}},
                "sendTransaction": "ignored",
                "getSignatureStatuses": {"value": [status]},
            }
        )

    async def test_local_transfer_confirms(self) -> None:
        escrow, signer = generate_escrow()
        server = self._server({"err": None, "confirmationStatus": "finalized"})

        signature = await client(server).transfer(signer, from_pubkey=escrow, to_pubkey=new_pubkey(), amount=1000)

        assert signature
        methods = [m for _, m in server.calls]
        assert methods == ["getLatestBlockhash", "sendTransaction", "getSignatureStatuses"]

    async def test_unconfirmed_transfer_times_out(self) -> None:
        escrow, signer = generate_escrow()
        rpc = client(self._server(None), confirm_timeout_seconds=0.0, poll_interval_seconds=0.0)

        with pytest.raises(TransferTimeoutError) as exc:
            await rpc.transfer(signer, from_pubkey=escrow, to_pubkey=new_pubkey(), amount=1000)
        assert exc.value.signature

    async def test_failed_transaction(self) -> None:
        escrow, signer = generate_escrow()
        server = self._server({"err": {"InstructionError": [0, "Custom"]}, "confirmationStatus": "confirmed"})
        with pytest.raises(TransactionFailedError):
            await client(server).transfer(signer, from_pubkey=escrow, to_pubkey=new_pubkey(), amount=1000)

    async def test_rejects_non_positive_amount(self) -> None:
        escrow, signer = generate_escrow()
        with pytest.raises(ValidationError):
            await client(self._server(None)).transfer(signer, from_pubkey=escrow, to_pubkey=new_pubkey(), amount=0)

    async def test_wrong_signer(self) -> None:
        _, signer = generate_escrow()
        with pytest.raises(ConfigurationError, match="does not control"):
            await client(self._server(None)).transfer(
                signer, from_pubkey=new_pubkey(), to_pubkey=new_pubkey(), amount=1
            )

    async def test_confirmation_outage_after_send_is_a_timeout(self) -> None:
        escrow, signer = generate_escrow()
        server = self._server(None)
        server.failing_methods = {"getSignatureStatuses"}

        with pytest.raises(TransferTimeoutError) as exc:
            await client(server, max_retries=1).transfer(
                signer, from_pubkey=escrow, to_pubkey=new_pubkey(), amount=1000
            )
        assert exc.value.signature
        assert ("primary.test", "sendTransaction") in server.calls

    async def test_unanswered_send_is_a_timeout(self) -> None:
        escrow, signer = generate_escrow()
        server = self._server(None)
        server.failing_methods = {"sendTransaction"}

        with pytest.raises(TransferTimeoutError) as exc:
            await client(server, max_retries=1).transfer(
                signer, from_pubkey=escrow, to_pubkey=new_pubkey(), amount=1000
            )
        assert exc.value.signature

    async def test_rejected_send_is_not_a_timeout(self) -> None:
        escrow, signer = generate_escrow()
        server = self._server(None)
        server.results["sendTransaction"] = RpcFault("Transaction simulation failed: insufficient funds")

        with pytest.raises(RPCError) as exc:
            await client(server).transfer(signer, from_pubkey=escrow, to_pubkey=new_pubkey(), amount=1000)
        assert not isinstance(exc.value, TransferTimeoutError)


class TestTransferFee:
    async def test_fee_from_node(self) -> None:
        escrow, signer = generate_escrow()
        server = RpcServer(
            {
                "getLatestBlockhash": {"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 1}},
                "getFeeForMessage": {"context": {"slot": 1}, "value": 5000},
            }
        )
        assert await client(server).transfer_fee(signer, from_pubkey=escrow) == 5000

    async def test_unknown_fee_uses_default(self) -> None:
        escrow, signer = generate_escrow()
        server = RpcServer(
            {
                "getLatestBlockhash": {"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 1}},
                "getFeeForMessage": {"context": {"slot": 1}, "value": None},
            }
        )
        assert await client(server).transfer_fee(signer, from_pubkey=escrow) == DEFAULT_SIGNATURE_FEE_LAMPORTS

    async def test_separate_fee_payer_costs_the_escrow_nothing(self) -> None:
        escrow, signer = generate_escrow()
        server = RpcServer({})
        assert await client(server, fee_payer=Keypair()).transfer_fee(signer, from_pubkey=escrow) == 0
        assert server.calls == []
