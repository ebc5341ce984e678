"""Web3 gateway for the FilecoinPay V1 payments contract.

Talks JSON-RPC through web3.py's async provider and signs locally with an
eth_account key. settleRail acts on one rail, so pair-level settlement resolves
the pair to a single target rail: the one named by the caller, or the
first of the payee's rails from that payer that owes anything.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from eth_account import Account as LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import Web3Exception

from filpay.config import GatewayConfig
from filpay.errors import (
    AlreadySettledOrInactiveError,
    ChainCallError,
    RailNotFoundError,
    ValidationError,
)
from filpay.types import (
    Account,
    Rail,
    RailRole,
    ReceiptStatus,
    SettlementAmounts,
    TokenDescriptor,
    TransactionHandle,
    TransactionReceipt,
    normalize_optional_address,
)

logger = logging.getLogger(__name__)

_RAIL_VIEW = [
    {"name": "token", "type": "address"},
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "operator", "type": "address"},
    {"name": "validator", "type": "address"},
    {"name": "paymentRate", "type": "uint256"},
    {"name": "lockupPeriod", "type": "uint256"},
    {"name": "lockupFixed", "type": "uint256"},
    {"name": "settledUpTo", "type": "uint256"},
    {"name": "endEpoch", "type": "uint256"},
    {"name": "commissionRateBps", "type": "uint256"},
    {"name": "serviceFeeRecipient", "type": "address"},
]

_RAIL_INFO = [
    {"name": "railId", "type": "uint256"},
    {"name": "isTerminated", "type": "bool"},
    {"name": "endEpoch", "type": "uint256"},
]


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[dict[str, Any]], mutability: str) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
    }


PAYMENTS_ABI: list[dict[str, Any]] = [
    _fn(
        "getAccountInfoIfSettled",
        [("token", "address"), ("owner", "address")],
        [
            {"name": "fundedUntilEpoch", "type": "uint256"},
            {"name": "currentFunds", "type": "uint256"},
            {"name": "availableFunds", "type": "uint256"},
            {"name": "currentLockupRate", "type": "uint256"},
        ],
        "view",
    ),
    _fn(
        "getRailsForPayerAndToken",
        [("payer", "address"), ("token", "address")],
        [{"name": "", "type": "tuple[]", "components": _RAIL_INFO}],
        "view",
    ),
    _fn(
        "getRailsForPayeeAndToken",
        [("payee", "address"), ("token", "address")],
        [{"name": "", "type": "tuple[]", "components": _RAIL_INFO}],
        "view",
    ),
    _fn(
        "getRail",
        [("railId", "uint256")],
        [{"name": "", "type": "tuple", "components": _RAIL_VIEW}],
        "view",
    ),
    _fn(
        "settleRail",
        [("railId", "uint256"), ("untilEpoch", "uint256")],
        [
            {"name": "totalSettledAmount", "type": "uint256"},
            {"name": "totalNetPayeeAmount", "type": "uint256"},
            {"name": "totalOperatorCommission", "type": "uint256"},
            {"name": "finalSettledEpoch", "type": "uint256"},
            {"name": "note", "type": "string"},
        ],
        "nonpayable",
    ),
    _fn("withdraw", [("token", "address"), ("amount", "uint256")], [], "nonpayable"),
    _fn(
        "withdrawTo",
        [("token", "address"), ("to", "address"), ("amount", "uint256")],
        [],
        "nonpayable",
    ),
    _fn(
        "deposit",
        [("token", "address"), ("to", "address"), ("amount", "uint256")],
        [],
        "payable",
    ),
    {
        "type": "error",
        "name": "RailInactiveOrSettled",
        "inputs": [{"name": "railId", "type": "uint256"}],
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    _fn("balanceOf", [("account", "address")], [{"name": "", "type": "uint256"}], "view"),
    _fn(
        "allowance",
        [("owner", "address"), ("spender", "address")],
        [{"name": "", "type": "uint256"}],
        "view",
    ),
    _fn(
        "approve",
        [("spender", "address"), ("amount", "uint256")],
        [{"name": "", "type": "bool"}],
        "nonpayable",
    ),
]

RAIL_INACTIVE_OR_SETTLED_SELECTOR = Web3.to_hex(Web3.keccak(text="RailInactiveOrSettled(uint256)")[:4])

CHAIN_ERRORS = (Web3Exception, ValueError, OSError, asyncio.TimeoutError)


def revert_selector(exc: BaseException) -> str | None:
    """Extract the 4-byte custom error selector from a contract revert, if any."""
    data = getattr(exc, "data", None)
    if isinstance(data, (bytes, bytearray)):
        data = Web3.to_hex(data)
    if isinstance(data, str) and data.startswith("0x") and len(data) >= 10:
        return data[:10].lower()
    return None


def classify_chain_error(exc: BaseException, action: str, rail_id: int | None = None) -> ChainCallError:
    """Map a web3/transport failure onto the filpay error taxonomy."""
    if revert_selector(exc) == RAIL_INACTIVE_OR_SETTLED_SELECTOR:
        return AlreadySettledOrInactiveError(
            f"{action}: rail is inactive or already settled", rail_id=rail_id
        )
    return ChainCallError(f"{action} failed: {exc}")


class Web3ChainGateway:
    """ChainGateway over a JSON-RPC endpoint.

    Transactions are signed locally and ordered with the nonce policy from
    GatewayConfig. Writes are never retried.
    """

    def __init__(
        self,
        config: GatewayConfig,
        private_key: str | None = None,
        *,
        w3: AsyncWeb3 | None = None,
    ):
        self.config = config
        self._w3 = w3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
        self._account = None
        if private_key:
            try:
                self._account = LocalAccount.from_key(private_key)
            except (ValueError, TypeError) as e:
                raise ValidationError(f"Invalid private key: {e}") from None
        self._payments = self._w3.eth.contract(
            address=Web3.to_checksum_address(config.payments_contract),
            abi=PAYMENTS_ABI,
        )

    @property
    def signer_address(self) -> str | None:
        return self._account.address if self._account else None

    async def close(self) -> None:
        """Release the provider's HTTP session."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    @contextmanager
    def _chain_call(self, action: str, rail_id: int | None = None) -> Iterator[None]:
        try:
            yield
        except CHAIN_ERRORS as e:
            raise classify_chain_error(e, action, rail_id) from e

    def _token_contract(self, token: TokenDescriptor) -> Any:
        return self._w3.eth.contract(
            address=Web3.to_checksum_address(token.address), abi=ERC20_ABI
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_account_info(self, token: TokenDescriptor, address: str) -> Account:
        logger.debug("getAccountInfoIfSettled token=%s account=%s", token.symbol, address)
        with self._chain_call("getAccountInfoIfSettled"):
            funded_until, current, available, rate = await self._payments.functions.getAccountInfoIfSettled(
                Web3.to_checksum_address(token.address),
                Web3.to_checksum_address(address),
            ).call()
        try:
            return Account(
                address=address,
                funded_until_epoch=funded_until,
                current_funds=current,
                available_funds=available,
                current_lockup_rate=rate,
            )
        except ValueError as e:
            raise ChainCallError(f"Inconsistent account info for {address}: {e}") from e

    async def read_token_balance(self, token: TokenDescriptor, address: str) -> int:
        with self._chain_call("balanceOf"):
            return await self._token_contract(token).functions.balanceOf(
                Web3.to_checksum_address(address)
            ).call()

    async def read_allowance(self, token: TokenDescriptor, owner: str) -> int:
        with self._chain_call("allowance"):
            return await self._token_contract(token).functions.allowance(
                Web3.to_checksum_address(owner), self._payments.address
            ).call()

    async def list_rail_ids(
        self, role: RailRole, token: TokenDescriptor, address: str
    ) -> list[int]:
        if role is RailRole.PAYER:
            fn = self._payments.functions.getRailsForPayerAndToken
        else:
            fn = self._payments.functions.getRailsForPayeeAndToken
        with self._chain_call(f"getRailsFor{role.value.capitalize()}AndToken"):
            infos = await fn(
                Web3.to_checksum_address(address),
                Web3.to_checksum_address(token.address),
            ).call()
        return [int(info[0]) for info in infos]

    async def read_rail(self, rail_id: int, token: TokenDescriptor) -> Rail:
        try:
            with self._chain_call("getRail", rail_id):
                view = await self._payments.functions.getRail(rail_id).call()
        except AlreadySettledOrInactiveError:
            # getRail reverts with the same error for ids that were never created
            raise RailNotFoundError(rail_id, token.symbol) from None

        (rail_token, payer, payee, operator, validator, rate, lockup_period,
         lockup_fixed, settled_up_to, end_epoch, commission_bps, _) = view
        if int(payer, 16) == 0 or rail_token.lower() != token.address.lower():
            raise RailNotFoundError(rail_id, token.symbol)

        return Rail(
            id=rail_id,
            token=rail_token,
            payer=payer,
            payee=payee,
            operator=normalize_optional_address(operator),
            validator=normalize_optional_address(validator),
            payment_rate=rate,
            lockup_period=lockup_period,
            settled_up_to=settled_up_to,
            end_epoch=end_epoch,
            lockup_fixed=lockup_fixed,
            commission_rate_bps=commission_bps,
        )

    async def _pair_rail_ids(self, payer: str, payee: str, token: TokenDescriptor) -> list[int]:
        matching = []
        for rail_id in await self.list_rail_ids(RailRole.PAYEE, token, payee):
            try:
                rail = await self.read_rail(rail_id, token)
            except RailNotFoundError:
                continue
            if rail.payer.lower() == payer.lower():
                matching.append(rail_id)
        return matching

    async def _simulate_settle(self, rail_id: int, epoch: int, payee: str) -> SettlementAmounts:
        try:
            with self._chain_call("settleRail (static)", rail_id):
                total, net, *_ = await self._payments.functions.settleRail(rail_id, epoch).call(
                    {"from": Web3.to_checksum_address(payee)}
                )
        except AlreadySettledOrInactiveError:
            return SettlementAmounts(payment_amount=0, settlement_fee=0)
        return SettlementAmounts(payment_amount=total, settlement_fee=total - net)

    async def _settlement_target(
        self,
        payer: str,
        payee: str,
        token: TokenDescriptor,
        epoch: int,
        rail_id: int | None,
    ) -> tuple[int | None, SettlementAmounts]:
        """Pick the one rail a settleRail transaction for the pair acts on.

        settleRail settles a single rail, so the preview reports exactly the
        amount of the rail that submit_settlement targets.
        """
        if rail_id is not None:
            rail = await self.read_rail(rail_id, token)
            if rail.payer.lower() != payer.lower() or rail.payee.lower() != payee.lower():
                raise RailNotFoundError(rail_id, token.symbol)
            return rail_id, await self._simulate_settle(rail_id, epoch, payee)

        candidates = await self._pair_rail_ids(payer, payee, token)
        for candidate in candidates:
            amounts = await self._simulate_settle(candidate, epoch, payee)
            if not amounts.is_zero:
                return candidate, amounts
        return (candidates[0] if candidates else None), SettlementAmounts(0, 0)

    async def _current_epoch(self) -> int:
        with self._chain_call("eth_blockNumber"):
            return await self._w3.eth.block_number

    async def preview_settlement(
        self,
        payer: str,
        payee: str,
        token: TokenDescriptor,
        *,
        rail_id: int | None = None,
    ) -> SettlementAmounts:
        epoch = await self._current_epoch()
        _, amounts = await self._settlement_target(payer, payee, token, epoch, rail_id)
        return amounts

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _require_account(self) -> Any:
        if self._account is None:
            raise ValidationError("A private key is required to submit transactions")
        return self._account

    async def _send(self, action: str, call: Any, rail_id: int | None = None) -> TransactionHandle:
        account = self._require_account()
        with self._chain_call(action, rail_id):
            nonce = await self._w3.eth.get_transaction_count(
                account.address, self.config.nonce_policy.value
            )
            tx = await call.build_transaction(
                {"from": account.address, "nonce": nonce, "chainId": self.config.chain_id}
            )
            signed = account.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)

        handle = TransactionHandle(
            tx_hash=Web3.to_hex(tx_hash),
            action=action,
            sender=account.address,
            nonce=nonce,
        )
        logger.info("Submitted %s tx %s (nonce %s)", action, handle.tx_hash, nonce)
        return handle

    async def submit_settlement(
        self, payer: str, token: TokenDescriptor, *, rail_id: int | None = None
    ) -> TransactionHandle:
        payee = self._require_account().address
        epoch = await self._current_epoch()
        target, _ = await self._settlement_target(payer, payee, token, epoch, rail_id)
        if target is None:
            raise AlreadySettledOrInactiveError(f"No active rail from {payer} to {payee}")

        return await self._send(
            "settle", self._payments.functions.settleRail(target, epoch), rail_id=target
        )

    async def submit_withdraw(
        self, amount: int, token: TokenDescriptor, to: str | None = None
    ) -> TransactionHandle:
        token_address = Web3.to_checksum_address(token.address)
        if to:
            call = self._payments.functions.withdrawTo(
                token_address, Web3.to_checksum_address(to), amount
            )
        else:
            call = self._payments.functions.withdraw(token_address, amount)
        return await self._send("withdraw", call)

    async def submit_deposit(self, amount: int, token: TokenDescriptor) -> TransactionHandle:
        account = self._require_account()
        call = self._payments.functions.deposit(
            Web3.to_checksum_address(token.address), account.address, amount
        )
        return await self._send("deposit", call)

    async def submit_approve(self, amount: int, token: TokenDescriptor) -> TransactionHandle:
        call = self._token_contract(token).functions.approve(self._payments.address, amount)
        return await self._send("approve", call)

    async def await_confirmation(self, handle: TransactionHandle) -> TransactionReceipt:
        with self._chain_call("wait_for_transaction_receipt"):
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                handle.tx_hash,
                timeout=self.config.confirmation_timeout_seconds,
                poll_latency=self.config.poll_interval_seconds,
            )
        status = ReceiptStatus.SUCCESS if receipt["status"] == 1 else ReceiptStatus.FAILURE
        logger.info(
            "%s tx %s confirmed in block %s with status %s",
            handle.action, handle.tx_hash, receipt["blockNumber"], status.value,
        )
        return TransactionReceipt(
            tx_hash=handle.tx_hash,
            status=status,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )
