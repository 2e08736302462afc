import asyncio

import pytest
from eth_account import Account
from eth_utils import keccak

from exitbot.errors import RPCError
from exitbot.operations import OperationExecutor
from infra.gas_cache import FeeSnapshot
from infra.rpc import AsyncRPC, _url_host


class FakeResponse:
    def __init__(self, status, body, delay_s: float = 0.0) -> None:
        self.status = status
        self._body = body
        self.delay_s = delay_s
        self.request_info = None
        self.history = ()
        self.headers = {}

    async def __aenter__(self):
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return str(self._body)

    async def json(self, content_type=None):
        return self._body


class FakeSession:
    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.payloads = []
        self.closed = False

    def post(self, url, json=None):
        self.payloads.append(json)
        return self.responses.pop(0)


def _rpc(responses, **kwargs) -> AsyncRPC:
    rpc = AsyncRPC("rpc.example/v1", backoff_base_s=0.0, **kwargs)
    session = FakeSession(responses)

    async def _get_session():
        return session

    rpc._get_session = _get_session  # type: ignore[assignment]
    rpc.fake_session = session
    return rpc


def test_url_normalized() -> None:
    rpc = AsyncRPC("rpc.example/v1")
    assert rpc.url == "https://rpc.example/v1"
    assert _url_host("https://RPC.example:8545/x") == "rpc.example:8545"


@pytest.mark.asyncio
async def test_call_returns_result_and_parses_helpers() -> None:
    rpc = _rpc(
        [
            FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": "0x1"}),
            FakeResponse(200, {"jsonrpc": "2.0", "id": 2, "result": "0x2a"}),
        ]
    )
    assert await rpc.chain_id() == 1
    assert await rpc.pending_nonce("0x" + "11" * 20) == 42
    assert rpc.fake_session.payloads[1]["params"] == ["0x" + "11" * 20, "pending"]


@pytest.mark.asyncio
async def test_retries_transient_http_errors() -> None:
    rpc = _rpc(
        [
            FakeResponse(503, "busy"),
            FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": "0x10"}),
        ],
        max_retries=2,
    )
    assert await rpc.balance("0x" + "22" * 20) == 16
    assert len(rpc.fake_session.payloads) == 2


@pytest.mark.asyncio
async def test_client_http_error_not_retried() -> None:
    rpc = _rpc([FakeResponse(401, "unauthorized"), FakeResponse(200, {"result": "0x1"})], max_retries=2)
    with pytest.raises(RPCError) as excinfo:
        await rpc.chain_id()
    assert "http_401" in str(excinfo.value)
    assert len(rpc.fake_session.payloads) == 1


@pytest.mark.asyncio
async def test_json_rpc_error_raised_without_retry() -> None:
    rpc = _rpc([FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "nonce too low"}})])
    with pytest.raises(RPCError) as excinfo:
        await rpc.send_raw_transaction("0xdead")
    assert "nonce too low" in str(excinfo.value)


@pytest.mark.asyncio
async def test_send_raw_transaction_null_result_is_empty() -> None:
    rpc = _rpc([FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": None})])
    assert await rpc.send_raw_transaction("0xdead") == ""


class FixedFees:
    async def get_fees(self):
        return FeeSnapshot(fastest=1_000_000_000), None


@pytest.mark.asyncio
async def test_resend_after_timeout_returns_signed_hash() -> None:
    lp = "0x" + format(5, "064x")
    rpc = _rpc(
        [
            FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": lp}),
            FakeResponse(200, {"jsonrpc": "2.0", "id": 2, "result": "0x7"}),
            FakeResponse(200, {"jsonrpc": "2.0", "id": 3, "result": "0x" + "ab" * 32}, delay_s=0.5),
            FakeResponse(200, {"jsonrpc": "2.0", "id": 3, "error": {"code": -32000, "message": "already known"}}),
        ],
        default_timeout_s=0.1,
        max_retries=1,
    )
    executor = OperationExecutor(rpc, FixedFees(), Account.from_key("0x" + "11" * 32), clock=lambda: 1_700_000_000.0)

    tx_hash = await executor.withdraw()

    sends = [p for p in rpc.fake_session.payloads if p["method"] == "eth_sendRawTransaction"]
    assert len(sends) == 2
    assert tx_hash == "0x" + keccak(hexstr=sends[0]["params"][0]).hex()
