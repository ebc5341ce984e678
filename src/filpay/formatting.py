"""Pure presentation helpers.

Nothing here talks to the chain; every function takes already-computed data
and returns text. Amounts are converted with Decimal so formatting never
loses precision.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import TextIO

from filpay.errors import ValidationError
from filpay.events.types import (
    DomainEvent,
    RailSettled,
    RailSettlementFailed,
    RailSettlementPreviewed,
    RailSkipped,
)
from filpay.services.accounts import BalanceOverview
from filpay.services.batch import BatchSettlementReport, FailureKind
from filpay.services.rails import PartyRails
from filpay.services.transactions import TransactionOutcome
from filpay.types import Rail, SettlementAmounts, TokenDescriptor


def format_units(amount: int, decimals: int = 18) -> str:
    """Render base units as a decimal string, keeping at least one fractional digit.

    >>> format_units(1_500_000_000_000_000_000)
    '1.5'
    >>> format_units(0)
    '0.0'
    """
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10**decimals)
    if decimals == 0:
        return f"{sign}{whole}"
    frac_text = str(frac).rjust(decimals, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_text}"


def parse_units(text: str, decimals: int = 18) -> int:
    """Parse a decimal string ("0.5") into base units.

    Raises:
        ValidationError: not a number, negative, or more precise than the token
    """
    try:
        value = Decimal(text.strip())
    except (InvalidOperation, AttributeError):
        raise ValidationError(f"Invalid amount: {text!r}") from None
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {text!r}")
    if value < 0:
        raise ValidationError(f"Amount cannot be negative: {text}")

    with localcontext() as ctx:
        ctx.prec = 100
        scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"Amount {text} has more than {decimals} decimal places")
    return int(scaled)


def shorten_address(address: str | None, prefix: int = 10) -> str:
    """0x1234567890abcdef... -> 0x12345678..."""
    if not address:
        return "None"
    if len(address) <= prefix:
        return address
    return f"{address[:prefix]}..."


@dataclass(frozen=True)
class Palette:
    """ANSI styles; every style is the identity when color is off."""

    enabled: bool = True

    @classmethod
    def for_stream(cls, stream: TextIO) -> Palette:
        """Color only on a terminal and only when NO_COLOR is unset."""
        isatty = getattr(stream, "isatty", None)
        enabled = bool(isatty and isatty()) and "NO_COLOR" not in os.environ
        return cls(enabled=enabled)

    def _wrap(self, code: str, text: object) -> str:
        if not self.enabled:
            return str(text)
        return f"\x1b[{code}m{text}\x1b[0m"

    def success(self, text: object) -> str:
        return self._wrap("1;32", text)

    def error(self, text: object) -> str:
        return self._wrap("1;31", text)

    def info(self, text: object) -> str:
        return self._wrap("1;36", text)

    def warn(self, text: object) -> str:
        return self._wrap("33", text)

    def dim(self, text: object) -> str:
        return self._wrap("37", text)

    def bright(self, text: object) -> str:
        return self._wrap("1", text)


PLAIN = Palette(enabled=False)


def _amount(amount: int, token: TokenDescriptor) -> str:
    return f"{format_units(amount, token.decimals)} {token.symbol}"


def render_balance(overview: BalanceOverview, *, detailed: bool = False, palette: Palette = PLAIN) -> list[str]:
    account = overview.account
    token = overview.token
    p = palette

    funded = "∞ (no active lockup)" if account.funding_unbounded else str(account.funded_until_epoch)
    lines = [
        p.bright("Account Balance"),
        p.dim(f"Address: {account.address}"),
        p.dim(f"Token: {token.symbol} ({token.address})"),
        "",
        f"Funded Until:     {p.info(f'epoch {funded}')}",
        f"Current Funds:    {p.bright(_amount(account.current_funds, token))}",
        f"Available:        {p.success(_amount(account.available_funds, token))}",
        f"Lockup Rate:      {p.dim(_amount(account.current_lockup_rate, token))}/epoch",
    ]
    if detailed:
        lines.append("")
        if overview.wallet_balance is not None:
            lines.append(f"Wallet Balance:   {p.success(_amount(overview.wallet_balance, token))}")
        lines.append(f"Locked Amount:    {p.warn(_amount(account.locked_amount, token))}")
        if overview.total_holdings is not None:
            lines.append(f"Total (Wallet + Contract): {p.bright(_amount(overview.total_holdings, token))}")
    if account.fully_withdrawable:
        lines.append("")
        lines.append(p.success("No active lockup: all funds available for withdrawal"))
    return lines


def render_wallet_balance(
    address: str,
    balance: int,
    token: TokenDescriptor,
    overview: BalanceOverview | None = None,
    *,
    palette: Palette = PLAIN,
) -> list[str]:
    p = palette
    lines = [
        p.bright("Wallet Balance"),
        p.dim(f"Address: {address}"),
        "",
        f"{token.symbol} Balance: {p.success(_amount(balance, token))}",
    ]
    if overview is not None:
        lines += [
            "",
            p.bright("Payments contract:"),
            f"  Total Funds:  {p.bright(_amount(overview.account.current_funds, token))}",
            f"  Available:    {p.success(_amount(overview.account.available_funds, token))}",
        ]
    return lines


def _status(rail: Rail, p: Palette) -> str:
    return p.dim("Terminated") if rail.is_terminated else p.success("Active")


def render_party_rails(party: PartyRails, *, palette: Palette = PLAIN) -> list[str]:
    p = palette
    token = party.token
    lines = [p.bright("Payment Rails"), p.dim(f"Address: {party.address}"), ""]

    def section(title: str, rails: list[Rail], arrow: str, counterparty: str) -> None:
        lines.append(p.bright(f"Rails as {title} ({len(rails)})"))
        if not rails:
            lines.append(p.dim("  (none)"))
        for index, rail in enumerate(rails, start=1):
            lines.append(f"  {p.info(f'{index}. Rail #{rail.id}')} {arrow} {p.dim(getattr(rail, counterparty))}")
            lines.append(f"     Rate: {p.bright(_amount(rail.payment_rate, token))}/epoch")
            lines.append(f"     Status: {_status(rail, p)}")

    section("Payer", party.as_payer, "->", "payee")
    lines.append("")
    section("Payee", party.as_payee, "<-", "payer")
    lines.append("")
    lines.append(p.bright(f"Total: {party.total} rails"))
    return lines


def render_rail(rail: Rail, token: TokenDescriptor, *, palette: Palette = PLAIN) -> list[str]:
    p = palette
    lines = [
        p.bright(f"Rail #{rail.id}"),
        f"Payer:           {p.info(rail.payer)}",
        f"Payee:           {p.info(rail.payee)}",
        f"Payment Rate:    {p.bright(_amount(rail.payment_rate, token))}/epoch",
        f"Lockup Period:   {p.dim(rail.lockup_period)} epochs",
        f"Settled Up To:   {p.dim(f'epoch {rail.settled_up_to}')}",
        f"Status:          {_status(rail, p)}",
    ]
    if rail.is_terminated:
        lines.append(f"End Epoch:       {p.dim(rail.end_epoch)}")
    lines.append(f"Operator:        {p.dim(rail.operator or 'None')}")
    lines.append(f"Validator:       {p.dim(rail.validator or 'None')}")
    return lines


def render_settlement_amounts(
    amounts: SettlementAmounts, token: TokenDescriptor, *, palette: Palette = PLAIN
) -> list[str]:
    p = palette
    return [
        f"Payment amount:  {p.bright(_amount(amounts.payment_amount, token))}",
        f"Settlement fee:  {p.dim(_amount(amounts.settlement_fee, token))}",
        f"Total to payee:  {p.success(_amount(amounts.net_amount, token))}",
    ]


def render_transaction(outcome: TransactionOutcome, label: str, *, palette: Palette = PLAIN) -> list[str]:
    p = palette
    lines = [p.dim(f"{label} tx: {outcome.tx_hash}")]
    if outcome.succeeded:
        lines.append(p.success(f"{label} confirmed in block {outcome.receipt.block_number}"))
    else:
        lines.append(p.error(f"{label} failed in block {outcome.receipt.block_number}"))
    lines.append(p.dim(f"Gas used: {outcome.receipt.gas_used}"))
    return lines


def render_rail_event(event: DomainEvent, token: TokenDescriptor, *, palette: Palette = PLAIN) -> list[str]:
    """Progress lines for one rail event of a batch run."""
    p = palette
    if isinstance(event, RailSkipped):
        return [p.dim(f"- Rail #{event.rail_id} ({shorten_address(event.payer)}): No payment due")]
    if isinstance(event, RailSettlementPreviewed):
        net = event.payment_amount - event.settlement_fee
        return [
            p.info(f"> Rail #{event.rail_id} ({shorten_address(event.payer)})"),
            p.dim(f"  Payment:     {_amount(event.payment_amount, token)}"),
            p.dim(f"  Fee:         {_amount(event.settlement_fee, token)}"),
            p.success(f"  Net to you:  {_amount(net, token)}"),
        ]
    if isinstance(event, RailSettled):
        return [
            p.info(f"> Rail #{event.rail_id} ({shorten_address(event.payer)}): settled {_amount(event.payment_amount, token)}"),
            p.success(f"  Confirmed in block {event.block_number}"),
        ]
    if isinstance(event, RailSettlementFailed):
        if event.failure_kind == FailureKind.ALREADY_SETTLED.value:
            return [p.dim(f"- Rail #{event.rail_id}: Already settled")]
        if event.failure_kind == FailureKind.CANCELLED.value:
            return [p.warn(f"- Rail #{event.rail_id}: Not processed (interrupted)")]
        return [p.error(f"x Rail #{event.rail_id} ({event.failure_kind}): {event.message}")]
    return []


def render_batch_report(report: BatchSettlementReport, *, palette: Palette = PLAIN) -> list[str]:
    """Summary of a batch run; per-rail lines stream from render_rail_event."""
    p = palette
    token = report.token
    lines = [""]
    if report.preview:
        lines += [
            p.info(f"Would settle: {len(report.settled)}"),
            p.dim(f"Would skip:   {len(report.skipped)}"),
        ]
        if report.failed:
            lines.append(p.error(f"Failed:       {len(report.failed)}"))
    else:
        lines += [
            p.success(f"Settled: {len(report.settled)}"),
            p.dim(f"Skipped: {len(report.skipped)}"),
            p.error(f"Failed:  {len(report.failed)}"),
        ]

    if report.settled:
        lines += [
            "",
            p.bright("Settlement Summary:"),
            p.dim(f"   Total payment:  {_amount(report.total_amount, token)}"),
            p.dim(f"   Total fees:     {_amount(report.total_fees, token)}"),
            p.success(f"   Net to you:     {_amount(report.total_net, token)}"),
        ]
        if report.preview:
            lines.append(p.warn("Run without --preview to execute settlements"))
    if report.interrupted:
        cancelled = sum(1 for f in report.failed if f.kind is FailureKind.CANCELLED)
        lines.append(p.warn(f"Interrupted: {cancelled} rail(s) not processed"))
    return lines


def emit_lines(lines: Iterable[str], stream: TextIO) -> None:
    for line in lines:
        print(line, file=stream)
