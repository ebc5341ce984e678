"""filpay Command Line Interface.

Inspect and settle payment rails under the payments contract:
- Account and wallet balances
- Withdraw and deposit
- Rail listing, inspection and settlement (single or batch)
- Settlement journal queries

Usage:
    filpay balance --account 0x...
    filpay withdraw 1.5 --key $KEY [--to 0x...]
    filpay deposit 10 --key $KEY
    filpay rails list --key $KEY
    filpay rails info 42 --key $KEY
    filpay rails settle 0xPAYER --key $KEY [--yes]
    filpay rails settle-all --key $KEY [--preview] [--yes]
    filpay settlement-preview 0xPAYER --key $KEY
    filpay journal --journal sqlite:///filpay.db [--run-id UUID]

Settings not given as flags come from FILPAY_* environment variables
(a .env file is honored).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TextIO
from uuid import UUID

from filpay import __version__
from filpay.config import Settings, gateway_config_warnings, get_settings, resolve_token
from filpay.errors import FilpayError, TransactionRevertedError, ValidationError
from filpay.events import EventCategory, EventEmitter, SettlementJournal
from filpay.events.types import DomainEvent
from filpay.formatting import (
    Palette,
    emit_lines,
    format_units,
    parse_units,
    render_balance,
    render_batch_report,
    render_party_rails,
    render_rail,
    render_rail_event,
    render_settlement_amounts,
    render_transaction,
    render_wallet_balance,
)
from filpay.gateway.base import ChainGateway
from filpay.gateway.web3_gateway import Web3ChainGateway
from filpay.schemas import (
    BalanceResponse,
    BatchReportResponse,
    FundsResponse,
    JournalEntryResponse,
    JournalResponse,
    RailListResponse,
    RailResponse,
    SettleResponse,
    SettlementAmountsResponse,
    TokenAmount,
    TokenInfo,
    WalletBalanceResponse,
)
from filpay.services import (
    AccountBalanceTracker,
    BatchSettlementOrchestrator,
    FundsService,
    RailRegistry,
    SettlementCalculator,
    SettlementService,
    SettleStatus,
)
from filpay.types import SettlementAmounts, TokenDescriptor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

GatewayFactory = Callable[[Settings, argparse.Namespace], ChainGateway]


def default_gateway_factory(settings: Settings, args: argparse.Namespace) -> ChainGateway:
    """Build a Web3ChainGateway from settings, letting CLI flags win."""
    config = settings.gateway_config(rpc_url=args.rpc)
    for warning in gateway_config_warnings(config):
        logger.info(warning)
    return Web3ChainGateway(config, private_key=args.key or settings.private_key)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def parse_rail_id(s: str) -> int:
    """Parse a non-negative rail id."""
    value = int(s)
    if value < 0:
        raise argparse.ArgumentTypeError(f"rail id must be non-negative: {s}")
    return value


@dataclass
class CommandContext:
    """Per-invocation collaborators handed to command handlers."""

    gateway: ChainGateway
    token: TokenDescriptor
    emitter: EventEmitter
    palette: Palette
    journal: SettlementJournal | None = None


class FilpayCli:
    """filpay Command Line Interface."""

    def __init__(
        self,
        gateway_factory: GatewayFactory | None = None,
        settings: Settings | None = None,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        prompt: Callable[[str], str] | None = None,
    ) -> None:
        self.gateway_factory = gateway_factory or default_gateway_factory
        self._settings = settings
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.prompt = prompt or input
        self.parser = self._build_parser()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="filpay",
            description="Inspect and settle payment rails on the Filecoin payments contract",
        )
        parser.add_argument("--version", action="version", version=f"filpay {__version__}")
        parser.add_argument("--rpc", type=str, help="JSON-RPC endpoint (default: $FILPAY_RPC_URL)")
        parser.add_argument("--key", type=str, help="Private key of the signing identity (default: $FILPAY_PRIVATE_KEY)")
        parser.add_argument("--token", type=str, help="Token symbol or address (default: $FILPAY_TOKEN or USDFC)")
        parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
        parser.add_argument("--journal", type=str, metavar="URL", help="Record events to a database (e.g. sqlite:///filpay.db)")
        parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, help="Log level for stderr diagnostics")

        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # balance command
        balance = subparsers.add_parser("balance", help="Show the payments account balance")
        balance.add_argument("--account", type=str, help="Account address (default: signer)")
        balance.add_argument("--detailed", action="store_true", help="Include wallet balance and lockup breakdown")

        # wallet-balance command
        wallet = subparsers.add_parser("wallet-balance", help="Show the token balance held in the wallet")
        wallet.add_argument("--account", type=str, help="Wallet address (default: signer)")

        # withdraw command
        withdraw = subparsers.add_parser("withdraw", help="Withdraw available funds from the payments contract")
        withdraw.add_argument("amount", type=str, help="Amount in token units, e.g. 0.5")
        withdraw.add_argument("--to", type=str, help="Recipient address (default: signer)")

        # deposit command
        deposit = subparsers.add_parser("deposit", help="Deposit wallet funds into the payments contract")
        deposit.add_argument("amount", type=str, help="Amount in token units, e.g. 10")

        # rails command group
        rails = subparsers.add_parser("rails", help="Payment rail operations")
        rails_sub = rails.add_subparsers(dest="rails_command", help="Rail commands")

        rails_list = rails_sub.add_parser("list", help="List rails as payer and as payee")
        rails_list.add_argument("--account", type=str, help="Party address (default: signer)")

        rails_info = rails_sub.add_parser("info", help="Show one rail")
        rails_info.add_argument("rail_id", type=parse_rail_id, help="Rail id")

        rails_settle = rails_sub.add_parser("settle", help="Settle the next rail on which a payer owes you")
        rails_settle.add_argument("payer", type=str, help="Payer address")
        rails_settle.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")

        settle_all = rails_sub.add_parser("settle-all", help="Settle every rail where you are payee")
        settle_all.add_argument("--preview", action="store_true", help="Compute only, submit nothing")
        settle_all.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
        settle_all.add_argument("--payee", type=str, help="Payee to preview (default: signer)")

        # settle shortcut
        settle = subparsers.add_parser("settle", help="Shortcut for 'rails settle'")
        settle.add_argument("payer", type=str, help="Payer address")
        settle.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")

        # settlement-preview command
        preview = subparsers.add_parser("settlement-preview", help="Show what settling a payer would realize")
        preview.add_argument("payer", type=str, help="Payer address")
        preview.add_argument("--payee", type=str, help="Payee address (default: signer)")

        # journal command
        journal = subparsers.add_parser("journal", help="Show recorded settlement events")
        journal.add_argument("--run-id", type=parse_uuid, help="Show events of one batch run or command")
        journal.add_argument("--event-types", type=str, help="Comma-separated list of event types")
        journal.add_argument("--limit", type=int, default=50, help="Maximum events (default: 50)")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help(self.stderr)
            return EXIT_ERROR
        if parsed.command == "rails" and not parsed.rails_command:
            print("Available: list, info <railId>, settle <payer>, settle-all", file=self.stderr)
            return EXIT_ERROR

        try:
            logging.basicConfig(
                level=parsed.log_level or self.settings.log_level,
                stream=self.stderr,
                format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            )
            return asyncio.run(self._dispatch(parsed))
        except FilpayError as e:
            print(f"Error: {e}", file=self.stderr)
            return EXIT_ERROR
        except KeyboardInterrupt:
            print("Interrupted", file=self.stderr)
            return EXIT_INTERRUPTED

    async def _dispatch(self, args: argparse.Namespace) -> int:
        command = args.command
        if command == "rails":
            command = f"rails-{args.rails_command}"

        # Dispatch to command handler
        handlers: dict[str, Callable[[argparse.Namespace, CommandContext], Awaitable[int]]] = {
            "balance": self._cmd_balance,
            "wallet-balance": self._cmd_wallet_balance,
            "withdraw": self._cmd_withdraw,
            "deposit": self._cmd_deposit,
            "rails-list": self._cmd_rails_list,
            "rails-info": self._cmd_rail_info,
            "rails-settle": self._cmd_settle,
            "rails-settle-all": self._cmd_settle_all,
            "settle": self._cmd_settle,
            "settlement-preview": self._cmd_settlement_preview,
        }

        if command == "journal":
            return self._cmd_journal(args)

        handler = handlers.get(command)
        if handler is None:
            print(f"Unknown command: {command}", file=self.stderr)
            return EXIT_ERROR

        token = resolve_token(args.token or self.settings.token)
        gateway = self.gateway_factory(self.settings, args)
        ctx = CommandContext(
            gateway=gateway,
            token=token,
            emitter=EventEmitter(),
            palette=Palette(enabled=False) if args.json else Palette.for_stream(self.stdout),
        )
        journal_url = args.journal or self.settings.journal_url
        if journal_url:
            ctx.journal = SettlementJournal.connect(journal_url)
            ctx.emitter.on_all(ctx.journal.append)

        try:
            return await handler(args, ctx)
        finally:
            if ctx.journal is not None:
                ctx.journal.close()
            close = getattr(gateway, "close", None)
            if close is not None:
                await close()

    # ------------------------------------------------------------------
    # Output helpers
    # ------------------------------------------------------------------

    def _out(self, lines: list[str]) -> None:
        emit_lines(lines, self.stdout)

    def _json(self, model: Any) -> None:
        print(model.to_json(), file=self.stdout)

    def _status(self, args: argparse.Namespace, message: str) -> None:
        """Progress notes go to stderr in JSON mode so stdout stays parseable."""
        print(message, file=self.stderr if args.json else self.stdout)

    async def _confirm(self, args: argparse.Namespace, question: str) -> bool:
        text = f"{question} [y/N]: "
        if args.json:
            # input() writes its prompt to stdout
            print(text, end="", file=self.stderr, flush=True)
            text = ""
        answer = await asyncio.to_thread(self.prompt, text)
        return answer.strip().lower() in ("y", "yes")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _cmd_balance(self, args: argparse.Namespace, ctx: CommandContext) -> int:
        """Show the payments account balance."""
        tracker = AccountBalanceTracker(ctx.gateway)
        overview = await tracker.get_overview(ctx.token, args.account, include_wallet=args.detailed)
        if args.json:
            self._json(BalanceResponse.from_overview(overview))
        else:
            self._out(render_balance(overview, detailed=args.detailed, palette=ctx.palette))
        return EXIT_OK

    async def _cmd_wallet_balance(self, args: argparse.Namespace, ctx: CommandContext) -> int:
        """Show the wallet balance, plus the contract account when signing."""
        tracker = AccountBalanceTracker(ctx.gateway)
        address = args.account or ctx.gateway.signer_address
        if not address:
            raise ValidationError("Either --key or --account is required")

        balance = await tracker.get_wallet_balance(ctx.token, address)
        overview = None
        if ctx.gateway.signer_address and not args.account:
            overview = await tracker.get_overview(ctx.token)

        if args.json:
            self._json(
                WalletBalanceResponse(
                    address=address,
                    token=TokenInfo.from_token(ctx.token),
                    balance=TokenAmount(raw=str(balance), formatted=format_units(balance, ctx.token.decimals)),
                    contract=BalanceResponse.from_overview(overview) if overview else None,
                )
            )
        else:
            self._out(render_wallet_balance(address, balance, ctx.token, overview, palette=ctx.palette))
        return EXIT_OK

    async def _cmd_withdraw(self, args: argparse.Namespace, ctx: CommandContext) -> int:
        """Withdraw funds."""
        amount = parse_units(args.amount, ctx.token.decimals)
        self._status(args, f"Withdrawing {args.amount} {ctx.token.symbol}...")
        outcome = await FundsService(ctx.gateway, ctx.emitter).withdraw(amount, ctx.token, args.to)
        if args.json:
            self._json(FundsResponse.from_outcome(amount, ctx.token, outcome, recipient=args.to))
        else:
            self._out(render_transaction(outcome, "Withdrawal", palette=ctx.palette))
        return EXIT_OK

    async def _cmd_deposit(self, args: argparse.Namespace, ctx: CommandContext) -> int:
        """Deposit funds, approving the contract first when needed."""
        amount = parse_units(args.amount, ctx.token.decimals)
        self._status(args, f"Depositing {args.amount} {ctx.token.symbol}...")
        outcome = await FundsService(ctx.gateway, ctx.emitter).deposit(amount, ctx.token)
        if args.json:
            self._json(FundsResponse.from_outcome(amount, ctx.token, outcome))
        else:
            if outcome.approval is not None:
                self._out(render_transaction(outcome.approval, "Approval", palette=ctx.palette))
            self._out(render_transaction(outcome, "Deposit", palette=ctx.palette))
        return EXIT_OK

    async def _cmd_rails_list(self, args: argparse.Namespace, ctx: CommandContext) -> int:
        """List rails on both sides."""
        party = await RailRegistry(ctx.gateway).list_party_rails(ctx.token, args.account)
        if args.json:
            self._json(RailListResponse.from_party(party))
        else:
            self._out(render_party_rails(party, palette=ctx.palette))
        return EXIT_OK

    async def _cmd_rail_info(self, args: argparse.Namespace, ctx: CommandContext) -> int:
        """Show one rail."""
        rail = await RailRegistry(ctx.gateway).get_rail(args.rail_id, ctx.token)
        if args.json:
            self._json(RailResponse.from_rail(rail, ctx.token))
        else:
            self._out(render_rail(rail, ctx.token, palette=ctx.palette))
        return EXIT_OK

    async def _cmd_settlement_preview(self, args: argparse.Namespace, ctx: CommandContext) -> int:
        """Preview settlement between a payer and a payee."""
        payee = args.payee or ctx.gateway.signer_address
        if not payee:
            raise ValidationError("Either --key or --payee is required")
        amounts = await SettlementCalculator(ctx.gateway).compute_settlement(args.payer, payee, ctx.token)
        if args.json:
            self._json(SettlementAmountsResponse.from_amounts(args.payer, payee, ctx.token, amounts))
            return EXIT_OK

        self._out([f"Payer: {args.payer}", f"Payee: {payee}", ""])
        self._out(render_settlement_amounts(amounts, ctx.token, palette=ctx.palette))
        if amounts.is_zero:
            self._out(["", ctx.palette.warn("No payment to settle (amount is 0)")])
        return EXIT_OK

    async def _cmd_settle(self, args: argparse.Namespace, ctx: CommandContext) -> int:
        """Settle the next owing rail from one payer, with the signer as payee."""

        async def confirm(amounts: SettlementAmounts) -> bool:
            if not args.json:
                self._out(render_settlement_amounts(amounts, ctx.token, palette=ctx.palette))
            if args.yes:
                return True
            return await self._confirm(args, "Proceed with settlement?")

        service = SettlementService(ctx.gateway, emitter=ctx.emitter)
        try:
            result = await service.settle(args.payer, ctx.token, confirm=confirm)
        except TransactionRevertedError as e:
            print(f"Error: {e} (block {e.receipt.block_number}, tx {e.receipt.tx_hash})", file=self.stderr)
            return EXIT_ERROR

        if args.json:
            self._json(SettleResponse.from_result(result, ctx.token))
        elif result.status is SettleStatus.NOTHING_TO_SETTLE:
            self._out([ctx.palette.warn("No payment to settle (amount is 0)")])
        elif result.status is SettleStatus.CANCELLED:
            self._out([ctx.palette.dim("Cancelled")])
        else:
            self._out(render_transaction(result.transaction, "Settlement", palette=ctx.palette))
        return EXIT_OK

    async def _cmd_settle_all(self, args: argparse.Namespace, ctx: CommandContext) -> int:
        """Settle (or preview) every rail where the signer is payee.

        Per-rail failures are part of the report and do not change the exit
        status. SIGINT/SIGTERM stop the run after the in-flight rail.
        """
        if not args.preview and not args.yes:
            payee = args.payee or ctx.gateway.signer_address
            if not payee:
                raise ValidationError("--key is required for settle-all")
            if not await self._confirm(args, f"Settle all {ctx.token.symbol} rails where {payee} is payee?"):
                self._status(args, "Cancelled")
                return EXIT_OK

        if not args.json:

            def show(event: DomainEvent) -> None:
                self._out(render_rail_event(event, ctx.token, palette=ctx.palette))

            ctx.emitter.on_category(EventCategory.RAIL, show)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = _install_stop_handlers(loop, stop)

        orchestrator = BatchSettlementOrchestrator(ctx.gateway, ctx.emitter, self.settings.batch)
        try:
            report = await orchestrator.run(ctx.token, preview=args.preview, payee=args.payee, stop=stop)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

        if args.json:
            self._json(BatchReportResponse.from_report(report))
        else:
            self._out(render_batch_report(report, palette=ctx.palette))
        if ctx.journal is not None:
            self._status(args, f"Run {report.run_id} recorded in journal")
        return EXIT_INTERRUPTED if report.interrupted else EXIT_OK

    def _cmd_journal(self, args: argparse.Namespace) -> int:
        """Show recorded events."""
        url = args.journal or self.settings.journal_url
        if not url:
            raise ValidationError("--journal URL or FILPAY_JOURNAL_URL is required")

        journal = SettlementJournal.connect(url)
        try:
            if args.run_id:
                stored = journal.get_by_correlation(args.run_id)
            else:
                types = [t.strip() for t in args.event_types.split(",")] if args.event_types else None
                stored = journal.recent(limit=args.limit, event_types=types)
            total = journal.count()
        finally:
            journal.close()

        if args.json:
            entries = [
                JournalEntryResponse(
                    event_id=s.event_id,
                    event_type=s.event_type,
                    category=s.category,
                    correlation_id=s.correlation_id,
                    timestamp=s.timestamp,
                    payload=s.payload,
                )
                for s in stored
            ]
            self._json(JournalResponse(entries=entries, total=total))
            return EXIT_OK

        print(f"Journal: {len(stored)} of {total} events", file=self.stdout)
        print("-" * 60, file=self.stdout)
        for s in stored:
            print(f"  {s.timestamp} | {s.event_type:<24} | run {s.correlation_id}", file=self.stdout)
        return EXIT_OK


def _install_stop_handlers(loop: asyncio.AbstractEventLoop, stop: asyncio.Event) -> list[signal.Signals]:
    """Route SIGINT/SIGTERM to the stop flag; returns the signals hooked."""
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug("Cannot install handler for %s", sig.name)
            continue
        installed.append(sig)
    return installed


def main() -> None:
    """Main entry point."""
    cli = FilpayCli()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
