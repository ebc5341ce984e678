"""Tests for BatchSettlementOrchestrator.

The three_rails fixture sets up:
- rail 1: nothing owed
- rail 2: owes 10.0 with a 0.2 fee
- rail 3: owes 5.0; its settlement transaction is mined with failure status
"""

import asyncio

import pytest

from conftest import CURRENT_EPOCH, OUTSIDER, PAYEE, PAYER_A, PAYER_B, PAYER_C, UNIT
from filpay.config import BatchConfig
from filpay.errors import AlreadySettledOrInactiveError, ChainCallError, ValidationError
from filpay.events import (
    BatchSettlementCompleted,
    BatchSettlementStarted,
    RailSettled,
    RailSettlementFailed,
    RailSettlementPreviewed,
    RailSkipped,
    TransactionSubmitted,
)
from filpay.gateway import InMemoryChainGateway
from filpay.services import (
    BatchSettlementOrchestrator,
    FailedRail,
    FailureKind,
    SettledRail,
    SkippedRail,
)

pytestmark = pytest.mark.asyncio


def assert_partition(report):
    """Every enumerated rail appears in exactly one outcome list."""
    ids = [o.rail_id for o in (*report.settled, *report.skipped, *report.failed)]
    assert sorted(ids) == sorted(report.rail_ids)
    assert len(ids) == len(set(ids))


class CountingGateway(InMemoryChainGateway):
    """Tracks how many reads are in flight at once."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.in_flight = 0
        self.peak = 0

    async def _read(self, operation, key):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await super()._read(operation, key)
        finally:
            self.in_flight -= 1


class TestExecute:
    """Execute mode."""

    async def test_mixed_outcomes(self, gateway, token, three_rails):
        rail_1, rail_2, rail_3 = three_rails

        report = await BatchSettlementOrchestrator(gateway).run(token)

        assert [r.rail_id for r in report.skipped] == [rail_1]
        assert [r.rail_id for r in report.settled] == [rail_2]
        assert [r.rail_id for r in report.failed] == [rail_3]
        assert report.settled[0].amount == 10 * UNIT
        assert report.settled[0].fee == UNIT // 5
        assert report.total_net == 98 * UNIT // 10
        assert report.failed[0].kind is FailureKind.TRANSACTION_FAILED
        assert report.failed[0].message == "transaction failed"
        assert report.failed[0].tx_hash is not None
        assert report.has_failures
        assert not report.preview
        assert not report.interrupted
        assert_partition(report)

    async def test_chain_state_after_run(self, gateway, token, three_rails):
        _, rail_2, rail_3 = three_rails

        await BatchSettlementOrchestrator(gateway).run(token)

        assert gateway.rail(rail_2).settled_up_to == CURRENT_EPOCH
        assert gateway.rail(rail_3).settled_up_to == 105

    async def test_outcomes_in_enumeration_order(self, gateway, token, three_rails):
        report = await BatchSettlementOrchestrator(gateway).run(token)

        outcomes = report.outcomes()

        assert [o.rail_id for o in outcomes] == list(three_rails)
        assert [type(o) for o in outcomes] == [SkippedRail, SettledRail, FailedRail]

    async def test_outcome_for_unknown_rail(self, gateway, token, three_rails):
        report = await BatchSettlementOrchestrator(gateway).run(token)

        with pytest.raises(KeyError):
            report.outcome_for(999)

    async def test_sequential_submission(self, gateway, token):
        """Each rail is confirmed before the next rail is read."""
        for payer in (PAYER_A, PAYER_B, PAYER_C):
            gateway.fund_account(token, payer, 100 * UNIT)
            gateway.add_rail(token, payer, PAYEE, payment_rate=UNIT, settled_up_to=100)

        report = await BatchSettlementOrchestrator(gateway).run(token)

        assert len(report.settled) == 3
        assert [h.nonce for h in gateway.submitted] == [0, 1, 2]
        ops = [op for op, _ in gateway.call_log if op in ("read_rail", "await_confirmation")]
        assert ops == ["read_rail", "await_confirmation"] * 3

    async def test_rails_sharing_a_payer_are_credited_separately(self, gateway, token):
        """Each visit settles and reports the visited rail only."""
        gateway.fund_account(token, PAYER_A, 100 * UNIT)
        idle = gateway.add_rail(token, PAYER_A, PAYEE, payment_rate=UNIT, settled_up_to=CURRENT_EPOCH)
        first = gateway.add_rail(token, PAYER_A, PAYEE, payment_rate=UNIT, settled_up_to=100)
        second = gateway.add_rail(token, PAYER_A, PAYEE, payment_rate=2 * UNIT, settled_up_to=105)

        report = await BatchSettlementOrchestrator(gateway).run(token)

        assert [o.rail_id for o in report.skipped] == [idle]
        assert {o.rail_id: o.amount for o in report.settled} == {first: 10 * UNIT, second: 10 * UNIT}
        assert report.total_amount == 20 * UNIT
        payer = await gateway.read_account_info(token, PAYER_A)
        assert payer.current_funds == 80 * UNIT

    async def test_already_settled_is_benign(self, gateway, token):
        gateway.fund_account(token, PAYER_A, 100 * UNIT)
        rail_id = gateway.add_rail(token, PAYER_A, PAYEE, payment_rate=UNIT, settled_up_to=100)
        gateway.simulate_submit_error(
            "settle",
            AlreadySettledOrInactiveError("settled by someone else", rail_id=rail_id),
            payer=PAYER_A,
        )

        report = await BatchSettlementOrchestrator(gateway).run(token)

        assert report.failed[0].kind is FailureKind.ALREADY_SETTLED
        assert report.failed[0].benign
        assert not report.has_failures

    async def test_chain_error_on_one_rail_continues(self, gateway, token, three_rails):
        _, rail_2, _ = three_rails
        gateway.simulate_read_error("read_rail", rail_2, ChainCallError("node hiccup"))

        report = await BatchSettlementOrchestrator(gateway).run(token)

        failed = report.outcome_for(rail_2)
        assert failed.kind is FailureKind.CHAIN_CALL
        assert failed.payer is None
        assert "node hiccup" in failed.message
        assert len(report.failed) == 2
        assert_partition(report)

    async def test_unexpected_error_is_recorded(self, gateway, token, three_rails):
        _, rail_2, _ = three_rails
        gateway.simulate_read_error("preview_settlement", PAYER_B, RuntimeError("boom"))

        report = await BatchSettlementOrchestrator(gateway).run(token)

        failed = report.outcome_for(rail_2)
        assert failed.kind is FailureKind.UNEXPECTED
        assert failed.payer == PAYER_B
        assert failed.message == "boom"

    async def test_enumeration_failure_propagates(self, gateway, token, emitter, recorder):
        gateway.simulate_read_error("list_rail_ids", PAYEE, ChainCallError("rpc down"))

        with pytest.raises(ChainCallError):
            await BatchSettlementOrchestrator(gateway, emitter).run(token)

        assert recorder.events == []

    async def test_no_rails(self, gateway, token):
        report = await BatchSettlementOrchestrator(gateway).run(token)

        assert report.rail_ids == ()
        assert report.processed_count == 0
        assert report.total_net == 0

    async def test_foreign_payee_rejected(self, gateway, token):
        with pytest.raises(ValidationError):
            await BatchSettlementOrchestrator(gateway).run(token, payee=OUTSIDER)

    async def test_payee_matching_signer_in_other_case(self, gateway, token, three_rails):
        report = await BatchSettlementOrchestrator(gateway).run(token, payee=PAYEE.upper().replace("0X", "0x"))

        assert len(report.settled) == 1

    async def test_requires_signer(self, readonly_gateway, token):
        with pytest.raises(ValidationError):
            await BatchSettlementOrchestrator(readonly_gateway).run(token, payee=PAYEE)


class TestPreview:
    """Preview mode."""

    async def test_classification_without_submissions(self, gateway, token, three_rails):
        rail_1, rail_2, rail_3 = three_rails

        report = await BatchSettlementOrchestrator(gateway).run(token, preview=True)

        assert report.preview
        assert gateway.submitted == []
        assert [r.rail_id for r in report.skipped] == [rail_1]
        # A revert cannot be known before submission; rail 3 previews as settleable
        assert [r.rail_id for r in report.settled] == [rail_2, rail_3]
        assert report.failed == ()
        assert all(r.tx_hash is None for r in report.settled)
        assert report.outcome_for(rail_2).net == 98 * UNIT // 10
        assert report.total_amount == 15 * UNIT
        assert_partition(report)

    async def test_preview_leaves_rails_untouched(self, gateway, token, three_rails):
        await BatchSettlementOrchestrator(gateway).run(token, preview=True)

        assert gateway.rail(three_rails[1]).settled_up_to == 100

    async def test_foreign_payee_allowed_read_only(self, readonly_gateway, token):
        readonly_gateway.add_rail(token, PAYER_A, OUTSIDER, payment_rate=UNIT, settled_up_to=100)

        report = await BatchSettlementOrchestrator(readonly_gateway).run(
            token, preview=True, payee=OUTSIDER
        )

        assert report.payee == OUTSIDER
        assert report.total_amount == 10 * UNIT

    async def test_overlapped_preview_keeps_order(self, token):
        gateway = CountingGateway(PAYEE, current_epoch=CURRENT_EPOCH, settlement_fee_bps=200, read_delay=0.01)
        payers = ["0x" + f"{n:02x}" * 20 for n in range(1, 9)]
        ids = [
            gateway.add_rail(token, payer, PAYEE, payment_rate=UNIT * (n + 1), settled_up_to=100)
            for n, payer in enumerate(payers)
        ]

        report = await BatchSettlementOrchestrator(gateway, config=BatchConfig(preview_concurrency=4)).run(
            token, preview=True
        )

        assert [r.rail_id for r in report.settled] == ids
        assert [r.amount for r in report.settled] == [10 * UNIT * (n + 1) for n in range(8)]
        assert 1 < gateway.peak <= 4

    async def test_default_preview_is_sequential(self, token):
        gateway = CountingGateway(PAYEE, current_epoch=CURRENT_EPOCH, read_delay=0.001)
        for n in range(1, 4):
            gateway.add_rail(token, "0x" + f"{n:02x}" * 20, PAYEE, payment_rate=UNIT, settled_up_to=100)

        await BatchSettlementOrchestrator(gateway).run(token, preview=True)

        assert gateway.peak == 1


class TestCancellation:
    """Stopping a run between rails."""

    async def test_stop_before_start(self, gateway, token, three_rails):
        stop = asyncio.Event()
        stop.set()

        report = await BatchSettlementOrchestrator(gateway).run(token, stop=stop)

        assert report.interrupted
        assert [f.kind for f in report.failed] == [FailureKind.CANCELLED] * 3
        assert gateway.submitted == []
        assert_partition(report)

    async def test_stop_mid_run(self, gateway, token, three_rails, emitter):
        rail_1, rail_2, rail_3 = three_rails
        stop = asyncio.Event()
        emitter.on(RailSkipped, lambda event: stop.set())

        report = await BatchSettlementOrchestrator(gateway, emitter).run(token, stop=stop)

        assert [r.rail_id for r in report.skipped] == [rail_1]
        assert [f.rail_id for f in report.failed] == [rail_2, rail_3]
        assert report.interrupted
        assert report.has_failures
        assert gateway.submitted == []

    async def test_stop_during_overlapped_preview(self, gateway, token, three_rails):
        stop = asyncio.Event()
        stop.set()

        report = await BatchSettlementOrchestrator(gateway, config=BatchConfig(preview_concurrency=2)).run(
            token, preview=True, stop=stop
        )

        assert report.interrupted
        assert report.processed_count == 3


class TestEvents:
    """Events emitted during a run."""

    async def test_execute_events(self, gateway, token, three_rails, emitter, recorder):
        report = await BatchSettlementOrchestrator(gateway, emitter).run(token)

        assert recorder.types == [
            "BatchSettlementStarted",
            "RailSkipped",
            "TransactionSubmitted",
            "TransactionConfirmed",
            "RailSettled",
            "TransactionSubmitted",
            "TransactionConfirmed",
            "RailSettlementFailed",
            "BatchSettlementCompleted",
        ]
        assert {e.metadata.correlation_id for e in recorder.events} == {report.run_id}

    async def test_started_and_completed_payloads(self, gateway, token, three_rails, emitter, recorder):
        await BatchSettlementOrchestrator(gateway, emitter).run(token)

        started = recorder.of_type(BatchSettlementStarted)[0]
        completed = recorder.of_type(BatchSettlementCompleted)[0]
        assert started.rail_ids == three_rails
        assert started.token == "USDFC"
        assert (completed.settled_count, completed.skipped_count, completed.failed_count) == (1, 1, 1)
        assert completed.total_fees == UNIT // 5

    async def test_preview_events(self, gateway, token, three_rails, emitter, recorder):
        await BatchSettlementOrchestrator(gateway, emitter).run(token, preview=True)

        assert len(recorder.of_type(RailSettlementPreviewed)) == 2
        assert recorder.of_type(RailSettled) == []
        assert recorder.of_type(TransactionSubmitted) == []

    async def test_failed_event_carries_kind(self, gateway, token, three_rails, emitter, recorder):
        await BatchSettlementOrchestrator(gateway, emitter).run(token)

        failed = recorder.of_type(RailSettlementFailed)[0]
        assert failed.rail_id == three_rails[2]
        assert failed.failure_kind == "transaction_failed"

    async def test_failing_handler_does_not_break_run(self, gateway, token, three_rails, emitter):
        def broken(event):
            raise RuntimeError("display crashed")

        emitter.on(RailSettled, broken)

        report = await BatchSettlementOrchestrator(gateway, emitter).run(token)

        assert len(report.settled) == 1
