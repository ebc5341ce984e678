"""Tests for the web3 gateway that need no RPC endpoint."""

from dataclasses import dataclass

import pytest
from eth_account import Account as LocalAccount
from web3 import Web3
from web3.exceptions import ContractCustomError, Web3Exception

from filpay.config import USDFC, GatewayConfig
from filpay.errors import (
    AlreadySettledOrInactiveError,
    ChainCallError,
    RailNotFoundError,
    ValidationError,
)
from filpay.gateway.web3_gateway import (
    PAYMENTS_ABI,
    RAIL_INACTIVE_OR_SETTLED_SELECTOR,
    Web3ChainGateway,
    classify_chain_error,
    revert_selector,
)
from filpay.services import BatchSettlementOrchestrator
from filpay.types import NoncePolicy, RailRole, ReceiptStatus

# Well-known development key; never funded on any real network
DEV_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


class _Revert(Exception):
    def __init__(self, data):
        super().__init__("execution reverted")
        self.data = data


class TestRevertDecoding:
    """Custom error selectors in reverts."""

    def test_selector_matches_keccak(self):
        expected = Web3.keccak(text="RailInactiveOrSettled(uint256)")[:4].hex()

        assert RAIL_INACTIVE_OR_SETTLED_SELECTOR.removeprefix("0x") == expected.removeprefix("0x")
        assert len(RAIL_INACTIVE_OR_SETTLED_SELECTOR) == 10

    def test_selector_from_hex_string(self):
        exc = _Revert(RAIL_INACTIVE_OR_SETTLED_SELECTOR + "00" * 32)

        assert revert_selector(exc) == RAIL_INACTIVE_OR_SETTLED_SELECTOR

    def test_selector_from_bytes(self):
        exc = _Revert(bytes.fromhex("deadbeef" + "00" * 32))

        assert revert_selector(exc) == "0xdeadbeef"

    @pytest.mark.parametrize("data", [None, "", "0x12", 42])
    def test_no_selector(self, data):
        assert revert_selector(_Revert(data)) is None

    def test_contract_custom_error_is_already_settled(self):
        exc = ContractCustomError(
            "execution reverted", data=RAIL_INACTIVE_OR_SETTLED_SELECTOR + "00" * 32
        )

        error = classify_chain_error(exc, "settleRail", rail_id=7)

        assert isinstance(error, AlreadySettledOrInactiveError)
        assert error.rail_id == 7

    def test_other_errors_are_chain_call_errors(self):
        error = classify_chain_error(Web3Exception("connection refused"), "getRail")

        assert type(error) is ChainCallError
        assert "getRail failed" in str(error)

    def test_abi_declares_custom_error(self):
        names = {entry["name"] for entry in PAYMENTS_ABI if entry["type"] == "error"}

        assert names == {"RailInactiveOrSettled"}


class TestConstruction:
    """Building the gateway does not touch the network."""

    def test_read_only_without_key(self):
        gateway = Web3ChainGateway(GatewayConfig())

        assert gateway.signer_address is None

    def test_signer_address_from_key(self):
        gateway = Web3ChainGateway(GatewayConfig(), DEV_KEY)

        assert gateway.signer_address == LocalAccount.from_key(DEV_KEY).address

    @pytest.mark.parametrize("key", ["not-a-key", "0x1234"])
    def test_invalid_key(self, key):
        with pytest.raises(ValidationError, match="Invalid private key"):
            Web3ChainGateway(GatewayConfig(), key)

    def test_chain_call_maps_value_errors(self):
        gateway = Web3ChainGateway(GatewayConfig())

        with pytest.raises(ChainCallError, match="balanceOf failed"):
            with gateway._chain_call("balanceOf"):
                raise ValueError("bad response")

    def test_chain_call_leaves_other_errors(self):
        gateway = Web3ChainGateway(GatewayConfig())

        with pytest.raises(KeyError):
            with gateway._chain_call("balanceOf"):
                raise KeyError("bug")

    @pytest.mark.asyncio
    async def test_submit_without_key(self, token):
        gateway = Web3ChainGateway(GatewayConfig())

        with pytest.raises(ValidationError, match="private key"):
            await gateway.submit_approve(1, token)


# ---------------------------------------------------------------------------
# In-process chain behind a fake AsyncWeb3
# ---------------------------------------------------------------------------

ZERO = "0x" + "00" * 20
PAYER_X = "0x" + "b2" * 20
PAYER_Y = "0x" + "c3" * 20
OUTSIDER = "0x" + "e5" * 20


def _inactive_or_settled():
    return ContractCustomError("execution reverted", data=RAIL_INACTIVE_OR_SETTLED_SELECTOR + "00" * 32)


async def _resolved(value):
    return value


@dataclass
class FakeRail:
    payer: str
    payee: str
    rate: int
    settled_up_to: int
    end_epoch: int = 0
    token: str = USDFC.address


class FakeChain:
    """Just enough of the payments contract to drive Web3ChainGateway."""

    def __init__(self, epoch=110, fee_bps=100):
        self.epoch = epoch
        self.fee_bps = fee_bps
        self.rails: dict[int, FakeRail] = {}
        self.nonce = 0
        self.block = 5_000
        self.nonce_queries: list[tuple[str, str]] = []
        self.built: list[tuple[str, tuple]] = []
        self.sent: dict[str, tuple[str, tuple]] = {}
        self.settled: list[tuple[int, int]] = []
        self.fail_next_receipt = False

    @property
    def settled_total(self) -> int:
        return sum(amount for _, amount in self.settled)

    def add_rail(self, rail_id, payer, payee, rate, settled_up_to, **kwargs):
        self.rails[rail_id] = FakeRail(payer, payee, rate, settled_up_to, **kwargs)

    def _settle_math(self, rail_id, until):
        rail = self.rails[rail_id]
        if rail.end_epoch and rail.settled_up_to >= rail.end_epoch:
            raise _inactive_or_settled()
        limit = min(until, rail.end_epoch) if rail.end_epoch else until
        total = rail.rate * max(limit - rail.settled_up_to, 0)
        return total, total - total * self.fee_bps // 10_000, limit

    def _listing(self, party, token, attr):
        return [
            (rail_id, rail.end_epoch != 0, rail.end_epoch)
            for rail_id, rail in self.rails.items()
            if getattr(rail, attr).lower() == party.lower() and rail.token.lower() == token.lower()
        ]

    def call(self, name, args):
        if name == "getRailsForPayeeAndToken":
            return self._listing(args[0], args[1], "payee")
        if name == "getRailsForPayerAndToken":
            return self._listing(args[0], args[1], "payer")
        if name == "getRail":
            rail = self.rails.get(args[0])
            if rail is None:
                raise _inactive_or_settled()
            return (rail.token, rail.payer, rail.payee, ZERO, ZERO, rail.rate,
                    0, 0, rail.settled_up_to, rail.end_epoch, 0, ZERO)
        if name == "settleRail":
            total, net, limit = self._settle_math(*args)
            return total, net, 0, limit, ""
        raise AssertionError(f"unexpected call {name}")

    def send(self, raw):
        tx_hash = Web3.to_hex(Web3.keccak(raw))
        self.sent[tx_hash] = self.built.pop(0)
        return Web3.keccak(raw)

    def mine(self, tx_hash):
        name, args = self.sent[tx_hash]
        self.block += 1
        if self.fail_next_receipt:
            self.fail_next_receipt = False
            return {"status": 0, "blockNumber": self.block, "gasUsed": 48_000}
        if name == "settleRail":
            rail_id, until = args
            total, _, limit = self._settle_math(rail_id, until)
            self.rails[rail_id].settled_up_to = limit
            self.settled.append((rail_id, total))
        return {"status": 1, "blockNumber": self.block, "gasUsed": 61_000}


class FakeCall:
    def __init__(self, chain, address, name, args):
        self._chain = chain
        self._address = address
        self._name = name
        self._args = args

    async def call(self, transaction=None):
        return self._chain.call(self._name, self._args)

    async def build_transaction(self, transaction):
        self._chain.built.append((self._name, self._args))
        return {
            "to": self._address,
            "value": 0,
            "gas": 300_000,
            "gasPrice": 10**9,
            "nonce": transaction["nonce"],
            "chainId": transaction["chainId"],
            "data": "0x",
        }


class FakeFunctions:
    def __init__(self, chain, address):
        self._chain = chain
        self._address = address

    def __getattr__(self, name):
        return lambda *args: FakeCall(self._chain, self._address, name, args)


class FakeContract:
    def __init__(self, chain, address):
        self.address = address
        self.functions = FakeFunctions(chain, address)


class FakeEth:
    def __init__(self, chain):
        self._chain = chain

    def contract(self, address, abi):
        return FakeContract(self._chain, address)

    @property
    def block_number(self):
        return _resolved(self._chain.epoch)

    async def get_transaction_count(self, address, block_identifier):
        self._chain.nonce_queries.append((address, block_identifier))
        return self._chain.nonce

    async def send_raw_transaction(self, raw):
        self._chain.nonce += 1
        return self._chain.send(raw)

    async def wait_for_transaction_receipt(self, tx_hash, timeout, poll_latency):
        return self._chain.mine(tx_hash)


class FakeWeb3:
    def __init__(self, chain):
        self.eth = FakeEth(chain)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def signer():
    return LocalAccount.from_key(DEV_KEY).address


@pytest.fixture
def web3_gateway(chain):
    return Web3ChainGateway(GatewayConfig(), DEV_KEY, w3=FakeWeb3(chain))


class TestRailReads:
    """Rail enumeration and decoding against the fake contract."""

    @pytest.mark.asyncio
    async def test_list_rail_ids_by_role(self, web3_gateway, chain, signer):
        chain.add_rail(1, PAYER_X, signer, 10, 100)
        chain.add_rail(2, signer, OUTSIDER, 10, 100)
        chain.add_rail(3, PAYER_Y, signer, 10, 100, token=OUTSIDER)

        assert await web3_gateway.list_rail_ids(RailRole.PAYEE, USDFC, signer) == [1]
        assert await web3_gateway.list_rail_ids(RailRole.PAYER, USDFC, signer) == [2]

    @pytest.mark.asyncio
    async def test_read_rail_decodes_view(self, web3_gateway, chain, signer):
        chain.add_rail(4, PAYER_X, signer, 7, 100, end_epoch=150)

        rail = await web3_gateway.read_rail(4, USDFC)

        assert (rail.id, rail.payer, rail.payee) == (4, PAYER_X, signer)
        assert (rail.payment_rate, rail.settled_up_to, rail.end_epoch) == (7, 100, 150)
        assert rail.operator is None and rail.validator is None
        assert rail.is_terminated

    @pytest.mark.asyncio
    async def test_unknown_rail_is_not_found(self, web3_gateway):
        with pytest.raises(RailNotFoundError):
            await web3_gateway.read_rail(99, USDFC)

    @pytest.mark.asyncio
    async def test_rail_of_other_token_is_not_found(self, web3_gateway, chain, signer):
        chain.add_rail(5, PAYER_X, signer, 7, 100, token=OUTSIDER)

        with pytest.raises(RailNotFoundError):
            await web3_gateway.read_rail(5, USDFC)

    @pytest.mark.asyncio
    async def test_pair_rail_ids_filter_by_payer(self, web3_gateway, chain, signer):
        chain.add_rail(1, PAYER_X, signer, 1, 100)
        chain.add_rail(2, PAYER_Y, signer, 1, 100)
        chain.add_rail(3, PAYER_X, signer, 1, 100)

        assert await web3_gateway._pair_rail_ids(PAYER_X, signer, USDFC) == [1, 3]


class TestSettlementTargeting:
    """Preview and submission agree on the single rail settleRail acts on."""

    @pytest.mark.asyncio
    async def test_preview_is_first_owing_rail(self, web3_gateway, chain, signer):
        chain.add_rail(1, PAYER_X, signer, 1, 110)
        chain.add_rail(2, PAYER_X, signer, 1, 100)
        chain.add_rail(3, PAYER_X, signer, 2, 100)

        amounts = await web3_gateway.preview_settlement(PAYER_X, signer, USDFC)

        assert amounts.payment_amount == 10
        assert amounts.settlement_fee == 0  # 1% of 10 rounds down

    @pytest.mark.asyncio
    async def test_submit_targets_previewed_rail(self, web3_gateway, chain, signer):
        chain.add_rail(1, PAYER_X, signer, 1, 110)
        chain.add_rail(2, PAYER_X, signer, 100, 100)
        chain.add_rail(3, PAYER_X, signer, 100, 100)

        amounts = await web3_gateway.preview_settlement(PAYER_X, signer, USDFC)
        handle = await web3_gateway.submit_settlement(PAYER_X, USDFC)
        await web3_gateway.await_confirmation(handle)

        assert chain.settled == [(2, amounts.payment_amount)]
        assert chain.rails[3].settled_up_to == 100

    @pytest.mark.asyncio
    async def test_rail_id_scopes_preview_and_submit(self, web3_gateway, chain, signer):
        chain.add_rail(1, PAYER_X, signer, 100, 100)
        chain.add_rail(2, PAYER_X, signer, 300, 105)

        amounts = await web3_gateway.preview_settlement(PAYER_X, signer, USDFC, rail_id=2)
        handle = await web3_gateway.submit_settlement(PAYER_X, USDFC, rail_id=2)
        await web3_gateway.await_confirmation(handle)

        assert amounts.payment_amount == 1_500
        assert amounts.settlement_fee == 15
        assert chain.settled == [(2, 1_500)]

    @pytest.mark.asyncio
    async def test_rail_id_of_other_payer(self, web3_gateway, chain, signer):
        chain.add_rail(1, PAYER_Y, signer, 1, 100)

        with pytest.raises(RailNotFoundError):
            await web3_gateway.submit_settlement(PAYER_X, USDFC, rail_id=1)
        assert chain.sent == {}

    @pytest.mark.asyncio
    async def test_finished_rail_previews_zero(self, web3_gateway, chain, signer):
        chain.add_rail(1, PAYER_X, signer, 1, 100, end_epoch=100)

        amounts = await web3_gateway.preview_settlement(PAYER_X, signer, USDFC)

        assert amounts.is_zero

    @pytest.mark.asyncio
    async def test_no_rail_for_pair(self, web3_gateway, signer):
        with pytest.raises(AlreadySettledOrInactiveError):
            await web3_gateway.submit_settlement(PAYER_X, USDFC)

    @pytest.mark.asyncio
    async def test_batch_totals_match_chain(self, web3_gateway, chain, signer):
        """Two rails from one payer: the report equals what moved on-chain."""
        chain.add_rail(1, PAYER_X, signer, 1, 100)
        chain.add_rail(2, PAYER_X, signer, 1, 100)

        report = await BatchSettlementOrchestrator(web3_gateway).run(USDFC)

        assert {o.rail_id: o.amount for o in report.settled} == {1: 10, 2: 10}
        assert report.total_amount == chain.settled_total == 20
        assert chain.settled == [(1, 10), (2, 10)]


class TestSubmission:
    """Signing, nonces and receipts."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", [NoncePolicy.PENDING, NoncePolicy.LATEST])
    async def test_nonce_policy_reaches_rpc(self, chain, signer, token, policy):
        gateway = Web3ChainGateway(GatewayConfig(nonce_policy=policy), DEV_KEY, w3=FakeWeb3(chain))
        chain.nonce = 4

        handle = await gateway.submit_approve(10, token)

        assert chain.nonce_queries == [(signer, policy.value)]
        assert handle.nonce == 4
        assert handle.sender == signer
        assert handle.action == "approve"
        assert handle.tx_hash.startswith("0x") and len(handle.tx_hash) == 66

    @pytest.mark.asyncio
    async def test_successful_receipt(self, web3_gateway, chain, token):
        handle = await web3_gateway.submit_withdraw(5, token)

        receipt = await web3_gateway.await_confirmation(handle)

        assert receipt.status is ReceiptStatus.SUCCESS
        assert receipt.block_number == 5_001
        assert receipt.gas_used == 61_000
        assert receipt.tx_hash == handle.tx_hash

    @pytest.mark.asyncio
    async def test_failed_receipt(self, web3_gateway, chain, token):
        chain.fail_next_receipt = True
        handle = await web3_gateway.submit_deposit(5, token)

        receipt = await web3_gateway.await_confirmation(handle)

        assert receipt.status is ReceiptStatus.FAILURE
        assert not receipt.succeeded
