import asyncio

import pytest
from eth_abi import decode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from exitbot import config
from exitbot.errors import FeeError, FeeUnavailableError, OperationError, RPCError
from exitbot.operations import (
    OperationExecutor,
    encode_remove_liquidity_eth,
    encode_swap_exact_eth_for_tokens,
)
from infra.gas_cache import FeeSnapshot

KEY = "0x" + "11" * 32
ACCOUNT = Account.from_key(KEY)
GWEI = 1_000_000_000


class FakeRPC:
    def __init__(
        self,
        *,
        lp_balance: int = 0,
        balance: int = 0,
        nonce: int = 7,
        reject: str = "",
        known: bool = False,
        tx_hash: str = "0x" + "cd" * 32,
    ) -> None:
        self.lp_balance = lp_balance
        self.eth_balance = balance
        self.nonce = nonce
        self.reject = reject
        self.known = known
        self.tx_hash = tx_hash
        self.sent = []
        self.attempts = []
        self.lookups = []
        self.calls = []

    async def eth_call(self, to, data, *, block="latest"):
        self.calls.append((to, data))
        return "0x" + format(self.lp_balance, "064x")

    async def pending_nonce(self, address):
        return self.nonce

    async def balance(self, address, block="latest"):
        return self.eth_balance

    async def send_raw_transaction(self, raw_tx):
        self.attempts.append(raw_tx)
        if self.reject:
            raise RPCError(f"eth_sendRawTransaction: rpc_error: {self.reject}")
        self.sent.append(raw_tx)
        return self.tx_hash

    async def transaction_by_hash(self, tx_hash):
        self.lookups.append(tx_hash)
        return {"hash": tx_hash} if self.known else None


class FakeFees:
    def __init__(self, snapshot: FeeSnapshot, err=None) -> None:
        self.snapshot = snapshot
        self.err = err

    async def get_fees(self):
        return self.snapshot, self.err


def _executor(rpc, fees) -> OperationExecutor:
    return OperationExecutor(rpc, fees, ACCOUNT, clock=lambda: 1_700_000_000.0)


def _args(calldata: bytes, signature: str, types):
    assert calldata[:4] == function_signature_to_4byte_selector(signature)
    return decode(types, calldata[4:])


def test_remove_liquidity_calldata() -> None:
    owner = ACCOUNT.address
    call = encode_remove_liquidity_eth(config.TOKENS["USDC"], 12345, owner, 1_700_003_600)
    token, liquidity, min_token, min_eth, to, deadline = _args(
        call,
        "removeLiquidityETH(address,uint256,uint256,uint256,address,uint256)",
        ["address", "uint256", "uint256", "uint256", "address", "uint256"],
    )
    assert to_checksum_address(token) == to_checksum_address(config.TOKENS["USDC"])
    assert (liquidity, min_token, min_eth) == (12345, 0, 0)
    assert to_checksum_address(to) == owner
    assert deadline == 1_700_003_600


def test_swap_calldata_path() -> None:
    call = encode_swap_exact_eth_for_tokens([config.TOKENS["WETH"], config.TOKENS["USDC"]], ACCOUNT.address, 99)
    amount_out_min, path, to, deadline = _args(
        call,
        "swapExactETHForTokens(uint256,address[],address,uint256)",
        ["uint256", "address[]", "address", "uint256"],
    )
    assert amount_out_min == 0
    assert [to_checksum_address(p) for p in path] == [
        to_checksum_address(config.TOKENS["WETH"]),
        to_checksum_address(config.TOKENS["USDC"]),
    ]
    assert deadline == 99


def test_withdraw_signs_and_submits() -> None:
    rpc = FakeRPC(lp_balance=5_000)
    executor = _executor(rpc, FakeFees(FeeSnapshot(fast=5 * GWEI, fastest=6 * GWEI)))

    tx_hash = asyncio.run(executor.withdraw())

    assert tx_hash == "0x" + "cd" * 32
    assert len(rpc.sent) == 1
    assert Account.recover_transaction(rpc.sent[0]) == ACCOUNT.address
    pair, data = rpc.calls[0]
    assert pair == to_checksum_address(config.PAIR_ID)
    assert data.startswith("0x70a08231")


def test_withdraw_without_liquidity_fails() -> None:
    rpc = FakeRPC(lp_balance=0)
    executor = _executor(rpc, FakeFees(FeeSnapshot(fastest=GWEI)))
    with pytest.raises(OperationError):
        asyncio.run(executor.withdraw())
    assert rpc.sent == []


def test_exchange_reserves_gas_from_balance() -> None:
    rpc = FakeRPC(balance=10**18)
    executor = _executor(rpc, FakeFees(FeeSnapshot(fastest=50 * GWEI)))

    asyncio.run(executor.exchange())

    assert len(rpc.sent) == 1
    assert Account.recover_transaction(rpc.sent[0]) == ACCOUNT.address


def test_exchange_fails_when_balance_only_covers_gas() -> None:
    rpc = FakeRPC(balance=config.GAS_LIMIT * 50 * GWEI)
    executor = _executor(rpc, FakeFees(FeeSnapshot(fastest=50 * GWEI)))
    with pytest.raises(OperationError):
        asyncio.run(executor.exchange())
    assert rpc.sent == []


def test_stale_fees_are_used_with_error() -> None:
    rpc = FakeRPC(lp_balance=1)
    executor = _executor(rpc, FakeFees(FeeSnapshot(fastest=3 * GWEI), err=FeeError("down")))
    asyncio.run(executor.withdraw())
    assert len(rpc.sent) == 1


def test_empty_fees_abort_operation() -> None:
    rpc = FakeRPC(lp_balance=1)
    executor = _executor(rpc, FakeFees(FeeSnapshot(), err=FeeError("down")))
    with pytest.raises(FeeUnavailableError) as excinfo:
        asyncio.run(executor.withdraw())
    assert "down" in str(excinfo.value)
    assert rpc.sent == []


def test_rejected_submission_is_operation_error() -> None:
    rpc = FakeRPC(lp_balance=1, reject="nonce too low")
    executor = _executor(rpc, FakeFees(FeeSnapshot(fastest=GWEI)))
    with pytest.raises(OperationError) as excinfo:
        asyncio.run(executor.withdraw())
    assert "nonce too low" in str(excinfo.value)
    assert len(rpc.lookups) == 1


def _local_hash(raw_tx: str) -> str:
    return "0x" + keccak(hexstr=raw_tx).hex()


def test_resent_tx_already_known_counts_as_submitted() -> None:
    rpc = FakeRPC(lp_balance=1, reject="already known")
    executor = _executor(rpc, FakeFees(FeeSnapshot(fastest=GWEI)))

    tx_hash = asyncio.run(executor.withdraw())

    assert tx_hash == _local_hash(rpc.attempts[0])
    assert rpc.lookups == []


def test_nonce_too_low_for_own_tx_counts_as_submitted() -> None:
    rpc = FakeRPC(lp_balance=1, reject="nonce too low", known=True)
    executor = _executor(rpc, FakeFees(FeeSnapshot(fastest=GWEI)))

    tx_hash = asyncio.run(executor.withdraw())

    assert tx_hash == _local_hash(rpc.attempts[0])
    assert rpc.lookups == [tx_hash]


def test_empty_node_hash_falls_back_to_local_hash() -> None:
    rpc = FakeRPC(balance=10**18, tx_hash="")
    executor = _executor(rpc, FakeFees(FeeSnapshot(fastest=GWEI)))

    tx_hash = asyncio.run(executor.exchange())

    assert tx_hash == _local_hash(rpc.sent[0])
