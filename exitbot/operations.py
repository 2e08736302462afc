from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from eth_abi import encode as abi_encode
from eth_account.signers.local import LocalAccount
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from web3 import Web3

from exitbot import config
from exitbot.errors import FeeUnavailableError, OperationError, RPCError
from infra.gas_cache import FeeSnapshot

log = logging.getLogger(__name__)

SIG_BALANCE_OF = "balanceOf(address)"
SIG_REMOVE_LIQUIDITY_ETH = "removeLiquidityETH(address,uint256,uint256,uint256,address,uint256)"
SIG_SWAP_EXACT_ETH_FOR_TOKENS = "swapExactETHForTokens(uint256,address[],address,uint256)"

# Node answers to a resend of a transaction it already accepted.
KNOWN_TX_ERRORS = ("already known", "known transaction", "already imported")
NONCE_USED_ERRORS = ("nonce too low",)


class FeeProvider(Protocol):
    async def get_fees(self) -> Tuple[FeeSnapshot, Optional[Exception]]:
        ...


def _encode_call(signature: str, types: List[str], values: List[Any]) -> bytes:
    selector = function_signature_to_4byte_selector(signature)
    return bytes(selector) + abi_encode(types, values)


def _hex_data(data: bytes) -> str:
    return "0x" + data.hex()


def encode_balance_of(owner: str) -> bytes:
    return _encode_call(SIG_BALANCE_OF, ["address"], [to_checksum_address(owner)])


def encode_remove_liquidity_eth(token: str, liquidity: int, to: str, deadline: int) -> bytes:
    # amountTokenMin / amountETHMin are 0: exit at any price.
    return _encode_call(
        SIG_REMOVE_LIQUIDITY_ETH,
        ["address", "uint256", "uint256", "uint256", "address", "uint256"],
        [to_checksum_address(token), int(liquidity), 0, 0, to_checksum_address(to), int(deadline)],
    )


def encode_swap_exact_eth_for_tokens(path: List[str], to: str, deadline: int, amount_out_min: int = 0) -> bytes:
    return _encode_call(
        SIG_SWAP_EXACT_ETH_FOR_TOKENS,
        ["uint256", "address[]", "address", "uint256"],
        [int(amount_out_min), [to_checksum_address(p) for p in path], to_checksum_address(to), int(deadline)],
    )


class OperationExecutor:
    """Withdraws the ETH/USDC liquidity position, then swaps ETH to USDC.

    Each call reads a fresh pending nonce, prices gas from the fee provider
    (fastest tier) and submits a signed legacy transaction.
    """

    def __init__(
        self,
        rpc: Any,
        fees: FeeProvider,
        account: LocalAccount,
        *,
        router: str = config.UNISWAP_V2_ROUTER,
        pair: str = config.PAIR_ID,
        weth: str = config.TOKENS["WETH"],
        usdc: str = config.TOKENS["USDC"],
        chain_id: int = config.CHAIN_ID,
        gas_limit: int = config.GAS_LIMIT,
        deadline_s: int = config.DEADLINE_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rpc = rpc
        self.fees = fees
        self.account = account
        self.router = to_checksum_address(router)
        self.pair = to_checksum_address(pair)
        self.weth = to_checksum_address(weth)
        self.usdc = to_checksum_address(usdc)
        self.chain_id = int(chain_id)
        self.gas_limit = int(gas_limit)
        self.deadline_s = int(deadline_s)
        self._clock = clock

    @property
    def address(self) -> str:
        return str(self.account.address)

    def _deadline(self) -> int:
        return int(self._clock()) + self.deadline_s

    async def _gas_price(self) -> int:
        snapshot, err = await self.fees.get_fees()
        if err is not None:
            if snapshot.is_empty():
                raise FeeUnavailableError(f"no gas price available: {err}") from err
            log.warning("using stale gas price %s gwei: %s", Web3.from_wei(snapshot.fastest, "gwei"), err)
        return int(snapshot.fastest)

    async def lp_balance(self) -> int:
        raw = await self.rpc.eth_call(self.pair, _hex_data(encode_balance_of(self.address)))
        hx = raw[2:] if raw.startswith("0x") else raw
        if not hx:
            return 0
        return int(hx[:64], 16)

    def _sign(self, tx: Dict[str, Any]) -> Tuple[str, str]:
        signed = self.account.sign_transaction(tx)
        return _hex_data(bytes(signed.raw_transaction)), _hex_data(bytes(signed.hash))

    async def _submit(self, data: bytes, *, value: int, gas_price: int) -> str:
        nonce = await self.rpc.pending_nonce(self.address)
        tx = {
            "nonce": int(nonce),
            "to": self.router,
            "value": int(value),
            "gas": self.gas_limit,
            "gasPrice": int(gas_price),
            "data": _hex_data(data),
            "chainId": self.chain_id,
        }
        raw_tx, local_hash = self._sign(tx)
        try:
            tx_hash = await self.rpc.send_raw_transaction(raw_tx)
        except RPCError as exc:
            if await self._already_submitted(exc, local_hash):
                log.warning("node already has tx %s, treating as submitted: %s", local_hash, exc)
                return local_hash
            raise OperationError(f"submission rejected: {exc}") from exc
        return tx_hash or local_hash

    async def _already_submitted(self, exc: RPCError, local_hash: str) -> bool:
        """True when a send error means our own signed tx reached the node.

        The RPC client resends after a timeout, so the first copy may have
        landed. "nonce too low" can also come from an unrelated tx, so that
        case is confirmed by looking the hash up.
        """
        msg = str(exc).lower()
        if any(s in msg for s in KNOWN_TX_ERRORS):
            return True
        if not any(s in msg for s in NONCE_USED_ERRORS):
            return False
        try:
            return await self.rpc.transaction_by_hash(local_hash) is not None
        except RPCError as lookup_exc:
            log.warning("lookup of tx %s failed: %s", local_hash, lookup_exc)
            return False

    async def withdraw(self) -> str:
        liquidity = await self.lp_balance()
        if liquidity <= 0:
            raise OperationError(f"no liquidity to withdraw from pair {self.pair}")
        gas_price = await self._gas_price()
        data = encode_remove_liquidity_eth(self.usdc, liquidity, self.address, self._deadline())
        tx_hash = await self._submit(data, value=0, gas_price=gas_price)
        log.info(
            "removeLiquidityETH submitted liquidity=%s gas_price=%s gwei tx=%s",
            liquidity,
            Web3.from_wei(gas_price, "gwei"),
            tx_hash,
        )
        return tx_hash

    async def exchange(self) -> str:
        gas_price = await self._gas_price()
        balance = await self.rpc.balance(self.address)
        # The swap pays its own gas out of the same balance.
        value = int(balance) - self.gas_limit * gas_price
        if value <= 0:
            raise OperationError(f"balance {balance} wei does not cover gas for swap")
        data = encode_swap_exact_eth_for_tokens([self.weth, self.usdc], self.address, self._deadline())
        tx_hash = await self._submit(data, value=value, gas_price=gas_price)
        log.info(
            "swapExactETHForTokens submitted value=%s ETH gas_price=%s gwei tx=%s",
            Web3.from_wei(value, "ether"),
            Web3.from_wei(gas_price, "gwei"),
            tx_hash,
        )
        return tx_hash
