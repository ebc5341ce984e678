"""Moving funds into and out of the payments contract."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from uuid import UUID, uuid4

from filpay.errors import InsufficientFundsError, TransactionRevertedError, ValidationError
from filpay.events.emitter import EventEmitter
from filpay.gateway.base import ChainGateway
from filpay.services.transactions import TransactionOutcome, TransactionRunner
from filpay.types import TokenDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepositOutcome(TransactionOutcome):
    """A deposit and the approval it needed, if any."""

    approval: TransactionOutcome | None = None


class FundsService:
    """Withdraw and deposit for the signing identity.

    Both operations check balances locally first and fail fast with
    InsufficientFundsError before anything is submitted.
    """

    def __init__(self, gateway: ChainGateway, emitter: EventEmitter | None = None):
        self.gateway = gateway
        self.runner = TransactionRunner(gateway, emitter)

    def _require_signer(self, action: str) -> str:
        signer = self.gateway.signer_address
        if not signer:
            raise ValidationError(f"A signing key is required to {action}")
        return signer

    @staticmethod
    def _require_positive(amount: int) -> None:
        if amount <= 0:
            raise ValidationError(f"Amount must be positive, got {amount}")

    async def withdraw(
        self,
        amount: int,
        token: TokenDescriptor,
        to: str | None = None,
        *,
        correlation_id: UUID | None = None,
    ) -> TransactionOutcome:
        """Withdraw available funds to the signer or to `to`.

        Raises:
            ValidationError: non-positive amount or no signing key
            InsufficientFundsError: amount exceeds available funds
            TransactionRevertedError: the withdrawal failed on-chain
        """
        self._require_positive(amount)
        signer = self._require_signer("withdraw")

        account = await self.gateway.read_account_info(token, signer)
        if amount > account.available_funds:
            raise InsufficientFundsError(
                f"Requested {amount} but only {account.available_funds} is available "
                f"({account.locked_amount} locked)",
                required=amount,
                available=account.available_funds,
            )

        logger.info("Withdrawing %d %s to %s", amount, token.symbol, to or signer)
        outcome = await self.runner.run(
            self.gateway.submit_withdraw(amount, token, to),
            correlation_id=correlation_id or uuid4(),
        )
        if not outcome.succeeded:
            raise TransactionRevertedError("Withdrawal transaction failed", outcome.receipt)
        return outcome

    async def deposit(
        self,
        amount: int,
        token: TokenDescriptor,
        *,
        correlation_id: UUID | None = None,
    ) -> DepositOutcome:
        """Deposit wallet tokens, approving the contract first when needed.

        Raises:
            ValidationError: non-positive amount or no signing key
            InsufficientFundsError: wallet balance below amount
            TransactionRevertedError: the approval or the deposit failed
        """
        self._require_positive(amount)
        signer = self._require_signer("deposit")
        correlation_id = correlation_id or uuid4()

        balance, allowance = await asyncio.gather(
            self.gateway.read_token_balance(token, signer),
            self.gateway.read_allowance(token, signer),
        )
        if balance < amount:
            raise InsufficientFundsError(
                f"Wallet holds {balance} but {amount} was requested",
                required=amount,
                available=balance,
            )

        approval = None
        if allowance < amount:
            logger.info("Allowance %d below %d, approving", allowance, amount)
            approval = await self.runner.run(
                self.gateway.submit_approve(amount, token),
                correlation_id=correlation_id,
            )
            if not approval.succeeded:
                raise TransactionRevertedError("Approval transaction failed", approval.receipt)

        logger.info("Depositing %d %s", amount, token.symbol)
        outcome = await self.runner.run(
            self.gateway.submit_deposit(amount, token),
            correlation_id=correlation_id,
        )
        if not outcome.succeeded:
            raise TransactionRevertedError("Deposit transaction failed", outcome.receipt)
        return DepositOutcome(handle=outcome.handle, receipt=outcome.receipt, approval=approval)
