"""In-memory chain gateway for local development and testing.

Simulates the subset of payments contract behavior the client drives:
accounts with lockup, wallet balances and allowances, rate-based rails,
settlement previews and settlement transactions.

Replace with Web3ChainGateway to talk to a real chain.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, replace
from typing import Callable

from filpay.errors import (
    AlreadySettledOrInactiveError,
    ChainCallError,
    RailNotFoundError,
    ValidationError,
)
from filpay.types import (
    UNBOUNDED_EPOCH,
    Account,
    Rail,
    RailRole,
    ReceiptStatus,
    SettlementAmounts,
    TokenDescriptor,
    TransactionHandle,
    TransactionReceipt,
)


@dataclass
class _AccountState:
    funds: int = 0
    locked: int = 0
    lockup_rate: int = 0


def _key(token: TokenDescriptor | str, address: str) -> tuple[str, str]:
    token_address = token.address if isinstance(token, TokenDescriptor) else token
    return token_address.lower(), address.lower()


class InMemoryChainGateway:
    """Stub gateway backed by in-memory contract state.

    Simulation hooks let tests script failures:
    - simulate_read_error(operation, key, error): a read raises `error`
    - simulate_submit_error(action, error, payer=None): the next submission raises
    - simulate_revert(action, payer=None): the next submission is mined with
      failure status
    """

    def __init__(
        self,
        signer_address: str | None = None,
        *,
        current_epoch: int = 0,
        settlement_fee_bps: int = 0,
        read_delay: float = 0.0,
    ):
        """Initialize stub gateway.

        Args:
            signer_address: Address of the signing identity (None = read-only).
            current_epoch: Epoch used for settlement computations.
            settlement_fee_bps: Protocol fee in basis points of the payment.
            read_delay: Seconds each read sleeps, to exercise overlap.
        """
        self._signer = signer_address
        self.current_epoch = current_epoch
        self.settlement_fee_bps = settlement_fee_bps
        self.read_delay = read_delay

        self._accounts: dict[tuple[str, str], _AccountState] = {}
        self._wallets: dict[tuple[str, str], int] = {}
        self._allowances: dict[tuple[str, str], int] = {}
        self._rails: dict[int, Rail] = {}
        self._next_rail_id = 1

        self._block_number = 1000
        self._nonces: dict[str, int] = {}
        self._receipts: dict[str, TransactionReceipt] = {}
        self._pending: dict[str, tuple[TransactionHandle, Callable[[], None], bool]] = {}

        self._read_errors: dict[tuple[str, object], Exception] = {}
        # Keyed by (action, payer) for settle, (action, None) for anything
        self._submit_errors: dict[tuple[str, str | None], Exception] = {}
        self._reverts: set[tuple[str, str | None]] = set()

        # Observations for tests
        self.submitted: list[TransactionHandle] = []
        self.call_log: list[tuple[str, object]] = []

    @property
    def signer_address(self) -> str | None:
        return self._signer

    # ------------------------------------------------------------------
    # Seeding and simulation
    # ------------------------------------------------------------------

    def fund_account(
        self,
        token: TokenDescriptor,
        address: str,
        funds: int,
        *,
        locked: int = 0,
        lockup_rate: int = 0,
    ) -> None:
        """Set a party's payments account state."""
        if locked > funds:
            raise ValueError("locked cannot exceed funds")
        self._accounts[_key(token, address)] = _AccountState(funds, locked, lockup_rate)

    def set_wallet_balance(self, token: TokenDescriptor, address: str, amount: int) -> None:
        self._wallets[_key(token, address)] = amount

    def set_allowance(self, token: TokenDescriptor, owner: str, amount: int) -> None:
        self._allowances[_key(token, owner)] = amount

    def add_rail(
        self,
        token: TokenDescriptor,
        payer: str,
        payee: str,
        *,
        payment_rate: int,
        settled_up_to: int = 0,
        end_epoch: int = 0,
        lockup_period: int = 0,
        operator: str | None = None,
        validator: str | None = None,
    ) -> int:
        """Create a rail and return its id."""
        rail_id = self._next_rail_id
        self._next_rail_id += 1
        self._rails[rail_id] = Rail(
            id=rail_id,
            token=token.address,
            payer=payer,
            payee=payee,
            operator=operator,
            validator=validator,
            payment_rate=payment_rate,
            lockup_period=lockup_period,
            settled_up_to=settled_up_to,
            end_epoch=end_epoch,
        )
        return rail_id

    def terminate_rail(self, rail_id: int, end_epoch: int | None = None) -> None:
        """Terminate a rail as an external actor would."""
        rail = self._rails[rail_id]
        self._rails[rail_id] = replace(
            rail, end_epoch=self.current_epoch if end_epoch is None else end_epoch
        )

    def settle_externally(self, rail_id: int) -> None:
        """Advance a rail as if another party had settled it."""
        rail = self._rails[rail_id]
        self._rails[rail_id] = replace(rail, settled_up_to=self._settle_limit(rail))

    def advance_epoch(self, epochs: int = 1) -> None:
        self.current_epoch += epochs

    def rail(self, rail_id: int) -> Rail:
        """Inspect current rail state (test helper, not part of the protocol)."""
        return self._rails[rail_id]

    def simulate_read_error(self, operation: str, key: object, error: Exception) -> None:
        """Make reads of `operation` keyed by `key` raise `error`.

        Keys: read_rail -> rail id; preview_settlement -> payer address;
        list_rail_ids / read_account_info / read_token_balance -> address.
        """
        if isinstance(key, str):
            key = key.lower()
        self._read_errors[(operation, key)] = error

    def simulate_submit_error(self, action: str, error: Exception, *, payer: str | None = None) -> None:
        """The next submission of `action` (settling `payer`, if given) raises `error`."""
        self._submit_errors[(action, payer.lower() if payer else None)] = error

    def simulate_revert(self, action: str, *, payer: str | None = None) -> None:
        """The next submission of `action` (settling `payer`, if given) is mined with failure status."""
        self._reverts.add((action, payer.lower() if payer else None))

    @staticmethod
    def _hook_keys(action: str, payer: str | None) -> list[tuple[str, str | None]]:
        keys: list[tuple[str, str | None]] = [(action, None)]
        if payer:
            keys.insert(0, (action, payer.lower()))
        return keys

    def _pop_submit_error(self, action: str, payer: str | None) -> Exception | None:
        for key in self._hook_keys(action, payer):
            if key in self._submit_errors:
                return self._submit_errors.pop(key)
        return None

    def _pop_revert(self, action: str, payer: str | None) -> bool:
        for key in self._hook_keys(action, payer):
            if key in self._reverts:
                self._reverts.discard(key)
                return True
        return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read(self, operation: str, key: object) -> None:
        self.call_log.append((operation, key))
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        else:
            await asyncio.sleep(0)
        lookup = key.lower() if isinstance(key, str) else key
        error = self._read_errors.get((operation, lookup))
        if error is not None:
            raise error

    async def read_account_info(self, token: TokenDescriptor, address: str) -> Account:
        await self._read("read_account_info", address)
        state = self._accounts.get(_key(token, address), _AccountState())
        available = state.funds - state.locked
        if state.lockup_rate == 0:
            funded_until = UNBOUNDED_EPOCH
        else:
            funded_until = self.current_epoch + available // state.lockup_rate
        return Account(
            address=address,
            funded_until_epoch=funded_until,
            current_funds=state.funds,
            available_funds=available,
            current_lockup_rate=state.lockup_rate,
        )

    async def read_token_balance(self, token: TokenDescriptor, address: str) -> int:
        await self._read("read_token_balance", address)
        return self._wallets.get(_key(token, address), 0)

    async def read_allowance(self, token: TokenDescriptor, owner: str) -> int:
        await self._read("read_allowance", owner)
        return self._allowances.get(_key(token, owner), 0)

    async def list_rail_ids(
        self, role: RailRole, token: TokenDescriptor, address: str
    ) -> list[int]:
        await self._read("list_rail_ids", address)
        wanted = address.lower()
        ids = []
        for rail_id, rail in self._rails.items():
            if rail.token.lower() != token.address.lower():
                continue
            party = rail.payer if role is RailRole.PAYER else rail.payee
            if party.lower() == wanted:
                ids.append(rail_id)
        return ids

    async def read_rail(self, rail_id: int, token: TokenDescriptor) -> Rail:
        await self._read("read_rail", rail_id)
        rail = self._rails.get(rail_id)
        if rail is None or rail.token.lower() != token.address.lower():
            raise RailNotFoundError(rail_id, token.symbol)
        return rail

    async def preview_settlement(
        self,
        payer: str,
        payee: str,
        token: TokenDescriptor,
        *,
        rail_id: int | None = None,
    ) -> SettlementAmounts:
        await self._read("preview_settlement", payer)
        target = self._settlement_target(payer, payee, token, rail_id)
        owed = self._owed(target) if target is not None else 0
        return SettlementAmounts(payment_amount=owed, settlement_fee=self._fee(owed))

    def _pair_rails(self, payer: str, payee: str, token: TokenDescriptor) -> list[Rail]:
        return [
            rail
            for rail in self._rails.values()
            if rail.payer.lower() == payer.lower()
            and rail.payee.lower() == payee.lower()
            and rail.token.lower() == token.address.lower()
        ]

    def _settlement_target(
        self, payer: str, payee: str, token: TokenDescriptor, rail_id: int | None
    ) -> Rail | None:
        """The rail one settlement transaction for the pair acts on."""
        rails = self._pair_rails(payer, payee, token)
        if rail_id is not None:
            for rail in rails:
                if rail.id == rail_id:
                    return rail
            raise RailNotFoundError(rail_id, token.symbol)
        for rail in rails:
            if self._owed(rail):
                return rail
        return next((r for r in rails if not self._fully_settled(r)), None)

    @staticmethod
    def _fully_settled(rail: Rail) -> bool:
        return bool(rail.end_epoch) and rail.settled_up_to >= rail.end_epoch

    def _settle_limit(self, rail: Rail) -> int:
        if rail.end_epoch:
            return min(self.current_epoch, rail.end_epoch)
        return self.current_epoch

    def _owed(self, rail: Rail) -> int:
        epochs = max(self._settle_limit(rail) - rail.settled_up_to, 0)
        return rail.payment_rate * epochs

    def _fee(self, amount: int) -> int:
        return amount * self.settlement_fee_bps // 10_000

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _require_signer(self) -> str:
        if self._signer is None:
            raise ValidationError("A signing key is required to submit transactions")
        return self._signer

    def _submit(
        self, action: str, effect: Callable[[], None], payer: str | None = None
    ) -> TransactionHandle:
        sender = self._require_signer()
        self.call_log.append((f"submit_{action}", sender))

        error = self._pop_submit_error(action, payer)
        if error is not None:
            raise error

        nonce = self._nonces.get(sender.lower(), 0)
        self._nonces[sender.lower()] = nonce + 1

        handle = TransactionHandle(
            tx_hash=f"0x{uuid.uuid4().hex}{uuid.uuid4().hex}",
            action=action,
            sender=sender,
            nonce=nonce,
        )
        self.submitted.append(handle)
        self._pending[handle.tx_hash] = (handle, effect, self._pop_revert(action, payer))
        return handle

    async def submit_settlement(
        self, payer: str, token: TokenDescriptor, *, rail_id: int | None = None
    ) -> TransactionHandle:
        payee = self._require_signer()
        target = self._settlement_target(payer, payee, token, rail_id)
        if target is None or self._fully_settled(target):
            rails = self._pair_rails(payer, payee, token)
            raise AlreadySettledOrInactiveError(
                f"No active or unsettled rail from {payer} to {payee}",
                rail_id=target.id if target else (rails[0].id if rails else None),
            )

        def effect() -> None:
            rail = self._rails[target.id]
            owed = self._owed(rail)
            self._rails[rail.id] = replace(rail, settled_up_to=self._settle_limit(rail))
            payer_state = self._accounts.setdefault(_key(token, payer), _AccountState())
            payer_state.funds -= owed
            payer_state.locked = min(payer_state.locked, payer_state.funds)
            payee_state = self._accounts.setdefault(_key(token, payee), _AccountState())
            payee_state.funds += owed - self._fee(owed)

        return self._submit("settle", effect, payer)

    async def submit_withdraw(
        self, amount: int, token: TokenDescriptor, to: str | None = None
    ) -> TransactionHandle:
        sender = self._require_signer()
        state = self._accounts.get(_key(token, sender), _AccountState())
        if amount > state.funds - state.locked:
            raise ChainCallError("execution reverted: insufficient unlocked funds")

        def effect() -> None:
            state.funds -= amount
            recipient = _key(token, to or sender)
            self._wallets[recipient] = self._wallets.get(recipient, 0) + amount

        return self._submit("withdraw", effect)

    async def submit_deposit(self, amount: int, token: TokenDescriptor) -> TransactionHandle:
        sender = self._require_signer()
        key = _key(token, sender)
        if self._allowances.get(key, 0) < amount:
            raise ChainCallError("execution reverted: allowance exceeded")
        if self._wallets.get(key, 0) < amount:
            raise ChainCallError("execution reverted: transfer amount exceeds balance")

        def effect() -> None:
            self._allowances[key] -= amount
            self._wallets[key] -= amount
            self._accounts.setdefault(key, _AccountState()).funds += amount

        return self._submit("deposit", effect)

    async def submit_approve(self, amount: int, token: TokenDescriptor) -> TransactionHandle:
        sender = self._require_signer()

        def effect() -> None:
            self._allowances[_key(token, sender)] = amount

        return self._submit("approve", effect)

    async def await_confirmation(self, handle: TransactionHandle) -> TransactionReceipt:
        self.call_log.append(("await_confirmation", handle.tx_hash))
        await asyncio.sleep(0)

        if handle.tx_hash in self._receipts:
            return self._receipts[handle.tx_hash]
        if handle.tx_hash not in self._pending:
            raise ChainCallError(f"Unknown transaction {handle.tx_hash}")

        _, effect, reverts = self._pending.pop(handle.tx_hash)
        self._block_number += 1
        if reverts:
            status = ReceiptStatus.FAILURE
        else:
            effect()
            status = ReceiptStatus.SUCCESS

        receipt = TransactionReceipt(
            tx_hash=handle.tx_hash,
            status=status,
            block_number=self._block_number,
            gas_used=21_000 if status is ReceiptStatus.SUCCESS else 48_000,
        )
        self._receipts[handle.tx_hash] = receipt
        return receipt
