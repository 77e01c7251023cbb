from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from custody.core.errors import ConfigurationError
from custody.models import LedgerTransaction, TransactionType, WalletAllocation
from custody.services import ledger, staking
from custody.services.allocation import allocate_address
from custody.services.balance_provider import BalanceProvider
from custody.services.chain_sources import BalanceSource, ChainSourceError, StaticPriceSource
from custody.services.notifications import NotificationSink
from custody.services.reconciliation import DepositReconciler, Outcome, deposit_dedup_key


class FakeChainSource(BalanceSource):
    name = "fake"

    def __init__(self):
        super().__init__()
        self.balances = {}
        self.failing = set()
        self.calls = 0

    def supports(self, asset_id):
        return True

    def get_balance(self, address, asset_id):
        self.calls += 1
        if address in self.failing:
            raise ChainSourceError("node down")
        return Decimal(str(self.balances.get(address, 0)))


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events = []

    def notify(self, event, payload):
        self.events.append((event, payload))


class BrokenSink(NotificationSink):
    def notify(self, event, payload):
        raise RuntimeError("smtp down")


@pytest.fixture
def source():
    return FakeChainSource()


@pytest.fixture
def provider(source):
    return BalanceProvider([source], [StaticPriceSource({"BTC": "60000", "ETH": "3000"})], cache_ttl_seconds=0)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def reconciler(session_factory, provider, sink):
    return DepositReconciler(session_factory, provider, notifier=sink, max_workers=4)


def _allocate(session_factory, seed, user_id, asset_id):
    db = session_factory()
    try:
        allocation = allocate_address(db, user_id, asset_id, seed=seed)
        return allocation.id, allocation.address
    finally:
        db.close()


def _balance(session_factory, user_id, asset_id):
    db = session_factory()
    try:
        return ledger.get_balance(db, user_id, asset_id)
    finally:
        db.close()


def _deposits(session_factory, user_id):
    db = session_factory()
    try:
        rows = (
            db.query(LedgerTransaction)
            .filter(LedgerTransaction.user_id == user_id, LedgerTransaction.tx_type == TransactionType.DEPOSIT)
            .order_by(LedgerTransaction.id)
            .all()
        )
        return [(r.asset_id, Decimal(str(r.amount)).normalize()) for r in rows]
    finally:
        db.close()


def test_cumulative_balances_credit_only_the_deltas(session_factory, seed, source, reconciler):
    _, address = _allocate(session_factory, seed, "alice", "ETH")

    for observed, expected_balance in ((0, 0), (50, 50), (50, 50), (120, 120)):
        source.balances[address] = observed
        reconciler.run_cycle()
        assert _balance(session_factory, "alice", "ETH") == Decimal(expected_balance)

    assert _deposits(session_factory, "alice") == [("ETH", Decimal("50")), ("ETH", Decimal("70"))]


def test_outcomes_reported_per_cycle(session_factory, seed, source, reconciler):
    _, address = _allocate(session_factory, seed, "alice", "BTC")
    source.balances[address] = "0.5"

    first = reconciler.run_cycle()
    second = reconciler.run_cycle()

    assert first.checked == 1 and first.credited == 1
    assert second.credited == 0
    assert second.count(Outcome.UNCHANGED) == 1
    assert "checked=1" in str(second)


def test_reconcile_allocation_twice_credits_once(session_factory, seed, source, reconciler):
    allocation_id, address = _allocate(session_factory, seed, "alice", "BTC")
    source.balances[address] = "0.25"

    assert reconciler.reconcile_allocation(allocation_id) == Outcome.CREDITED
    assert reconciler.reconcile_allocation(allocation_id) == Outcome.UNCHANGED
    assert _balance(session_factory, "alice", "BTC") == Decimal("0.25")


def test_already_credited_balance_is_not_credited_again(session_factory, seed, source, reconciler):
    allocation_id, address = _allocate(session_factory, seed, "alice", "ETH")
    db = session_factory()
    ledger.credit(
        db,
        "alice",
        "ETH",
        50,
        TransactionType.DEPOSIT,
        dedup_key=deposit_dedup_key("ETH", address, Decimal(50)),
    )
    db.commit()
    db.close()

    source.balances[address] = 50
    assert reconciler.reconcile_allocation(allocation_id) == Outcome.DUPLICATE
    assert _balance(session_factory, "alice", "ETH") == Decimal(50)

    # The duplicate advanced the watermark, so a later deposit credits only its own delta.
    source.balances[address] = 60
    assert reconciler.reconcile_allocation(allocation_id) == Outcome.CREDITED
    assert _balance(session_factory, "alice", "ETH") == Decimal(60)


def test_balance_decrease_is_not_a_deposit(session_factory, seed, source, reconciler):
    allocation_id, address = _allocate(session_factory, seed, "alice", "ETH")
    source.balances[address] = 10
    reconciler.run_cycle()
    source.balances[address] = 4
    assert reconciler.reconcile_allocation(allocation_id) == Outcome.UNCHANGED

    db = session_factory()
    try:
        allocation = db.get(WalletAllocation, allocation_id)
        assert Decimal(str(allocation.last_observed_balance)) == Decimal(10)
        assert allocation.last_checked_at is not None
    finally:
        db.close()
    assert _balance(session_factory, "alice", "ETH") == Decimal(10)


def test_provider_failure_is_isolated(session_factory, seed, source, reconciler):
    _, alice_address = _allocate(session_factory, seed, "alice", "ETH")
    _, bob_address = _allocate(session_factory, seed, "bob", "ETH")
    source.balances[alice_address] = 5
    source.balances[bob_address] = 7
    source.failing.add(alice_address)

    report = reconciler.run_cycle()

    assert report.count(Outcome.UNAVAILABLE) == 1
    assert report.credited == 1
    assert _balance(session_factory, "alice", "ETH") == Decimal(0)
    assert _balance(session_factory, "bob", "ETH") == Decimal(7)

    # Next tick picks alice up once the node recovers.
    source.failing.clear()
    reconciler.run_cycle()
    assert _balance(session_factory, "alice", "ETH") == Decimal(5)
    assert _balance(session_factory, "bob", "ETH") == Decimal(7)


def test_reconcile_user_only_touches_that_user(session_factory, seed, source, reconciler):
    _, alice_address = _allocate(session_factory, seed, "alice", "BTC")
    _, bob_address = _allocate(session_factory, seed, "bob", "BTC")
    source.balances[alice_address] = "1"
    source.balances[bob_address] = "2"

    assert reconciler.reconcile_user("alice") == 1
    assert _balance(session_factory, "alice", "BTC") == Decimal(1)
    assert _balance(session_factory, "bob", "BTC") == Decimal(0)


def test_usd_denomination_converts_at_current_price(session_factory, seed, source, provider, sink):
    reconciler = DepositReconciler(session_factory, provider, notifier=sink, denomination="usd")
    _, address = _allocate(session_factory, seed, "alice", "BTC")
    source.balances[address] = "0.5"

    assert reconciler.run_cycle().credited == 1
    assert _balance(session_factory, "alice", "USD") == Decimal("30000")
    assert _balance(session_factory, "alice", "BTC") == Decimal(0)

    db = session_factory()
    try:
        entry = db.query(LedgerTransaction).one()
        assert entry.meta["asset"] == "BTC"
        assert entry.meta["price_usd"] == "60000"
    finally:
        db.close()


def test_usd_denomination_without_price_waits(session_factory, seed, source, sink):
    provider = BalanceProvider([source], [], cache_ttl_seconds=0)
    reconciler = DepositReconciler(session_factory, provider, notifier=sink, denomination="usd")
    allocation_id, address = _allocate(session_factory, seed, "alice", "BNB")
    source.balances[address] = 2

    assert reconciler.reconcile_allocation(allocation_id) == Outcome.UNAVAILABLE
    assert _balance(session_factory, "alice", "USD") == Decimal(0)


def test_notification_sent_after_credit(session_factory, seed, source, reconciler, sink):
    _, address = _allocate(session_factory, seed, "alice", "ETH")
    source.balances[address] = 3
    reconciler.run_cycle()

    assert len(sink.events) == 1
    event, payload = sink.events[0]
    assert event == "deposit.confirmed"
    assert payload["user_id"] == "alice"
    assert payload["reference"].startswith("DEP_")


def test_notification_failure_keeps_the_credit(session_factory, seed, source, provider):
    reconciler = DepositReconciler(session_factory, provider, notifier=BrokenSink())
    allocation_id, address = _allocate(session_factory, seed, "alice", "ETH")
    source.balances[address] = 3

    assert reconciler.reconcile_allocation(allocation_id) == Outcome.CREDITED
    assert _balance(session_factory, "alice", "ETH") == Decimal(3)


def test_stopped_reconciler_abandons_work(session_factory, seed, source, reconciler):
    _, address = _allocate(session_factory, seed, "alice", "ETH")
    source.balances[address] = 3
    reconciler.stop()

    report = reconciler.run_cycle()
    assert report.count(Outcome.ABANDONED) == 1
    assert source.calls == 0
    assert _balance(session_factory, "alice", "ETH") == Decimal(0)


def test_many_allocations_in_parallel(session_factory, seed, source, reconciler):
    addresses = {}
    for i in range(8):
        _, address = _allocate(session_factory, seed, f"user-{i}", "ETH")
        addresses[f"user-{i}"] = address
        source.balances[address] = i + 1

    report = reconciler.run_cycle()
    assert report.credited == 8
    for i in range(8):
        assert _balance(session_factory, f"user-{i}", "ETH") == Decimal(i + 1)


def test_unknown_denomination_rejected(session_factory, provider):
    with pytest.raises(ValueError):
        DepositReconciler(session_factory, provider, denomination="eur")


def test_dedup_key_uses_minor_units():
    assert deposit_dedup_key("BTC", "1abc", Decimal("0.5")) == "deposit:BTC:1abc:50000000"


def test_empty_cycle(session_factory, provider):
    report = DepositReconciler(session_factory, provider).run_cycle()
    assert report.checked == 0


def test_unknown_asset_in_provider_raises_configuration_error(provider):
    with pytest.raises(ConfigurationError):
        provider.get_balance("0xabc", "DOGE")


def test_pass_that_loses_the_watermark_credits_nothing(session_factory, seed, source, provider, reconciler):
    allocation_id, address = _allocate(session_factory, seed, "alice", "ETH")
    other = DepositReconciler(session_factory, provider, notifier=RecordingSink())
    outcomes = {}

    def clock_running_other_pass():
        # Fires after this pass has read the watermark and before it moves it.
        if "other" not in outcomes:
            source.balances[address] = 50
            outcomes["other"] = other.reconcile_allocation(allocation_id)
            source.balances[address] = 120
        return datetime.now(timezone.utc)

    source.balances[address] = 120
    late = DepositReconciler(session_factory, provider, notifier=RecordingSink(), clock=clock_running_other_pass)
    outcomes["late"] = late.reconcile_allocation(allocation_id)

    assert outcomes == {"other": Outcome.CREDITED, "late": Outcome.SUPERSEDED}
    assert _balance(session_factory, "alice", "ETH") == Decimal(50)

    assert reconciler.reconcile_allocation(allocation_id) == Outcome.CREDITED
    assert _balance(session_factory, "alice", "ETH") == Decimal(120)
    assert _deposits(session_factory, "alice") == [("ETH", Decimal("50")), ("ETH", Decimal("70"))]


def test_concurrent_passes_on_one_allocation_credit_once(session_factory, seed, source, provider):
    allocation_id, address = _allocate(session_factory, seed, "alice", "ETH")
    source.balances[address] = 50
    reconcilers = [DepositReconciler(session_factory, provider, notifier=RecordingSink()) for _ in range(4)]

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(lambda r: r.reconcile_allocation(allocation_id), reconcilers))

    assert outcomes.count(Outcome.CREDITED) == 1
    assert Outcome.FAILED not in outcomes
    assert _balance(session_factory, "alice", "ETH") == Decimal(50)
    assert _deposits(session_factory, "alice") == [("ETH", Decimal("50"))]


def test_fractional_balance_is_seen_as_unchanged_afterwards(session_factory, seed, source, reconciler):
    allocation_id, address = _allocate(session_factory, seed, "alice", "ETH")
    source.balances[address] = "0.3"

    outcomes = [reconciler.reconcile_allocation(allocation_id) for _ in range(3)]

    assert outcomes == [Outcome.CREDITED, Outcome.UNCHANGED, Outcome.UNCHANGED]
    assert _balance(session_factory, "alice", "ETH") == Decimal("0.3")


def test_full_precision_deposits(session_factory, seed, source, reconciler):
    allocation_id, address = _allocate(session_factory, seed, "alice", "ETH")
    source.balances[address] = "1.123456789012345678"
    reconciler.reconcile_allocation(allocation_id)
    source.balances[address] = "2.000000000000000001"
    reconciler.reconcile_allocation(allocation_id)

    assert _balance(session_factory, "alice", "ETH") == Decimal("2.000000000000000001")
    assert _deposits(session_factory, "alice") == [
        ("ETH", Decimal("1.123456789012345678")),
        ("ETH", Decimal("0.876543210987654323")),
    ]
    db = session_factory()
    try:
        allocation = db.get(WalletAllocation, allocation_id)
        assert allocation.last_observed_balance == Decimal("2.000000000000000001")
    finally:
        db.close()


def test_usd_deposit_can_be_staked(session_factory, seed, source, provider, sink):
    reconciler = DepositReconciler(session_factory, provider, notifier=sink, denomination="usd")
    _, address = _allocate(session_factory, seed, "alice", "BTC")
    source.balances[address] = "0.01"
    reconciler.run_cycle()
    assert _balance(session_factory, "alice", "USD") == Decimal("600")

    db = session_factory()
    try:
        position = staking.open_stake(db, "alice", "BTC", Decimal("500"), ledger_asset_id="USD")
        assert position.asset_id == "BTC"
        assert position.ledger_asset_id == "USD"
        assert ledger.get_balance(db, "alice", "USD") == Decimal("100")

        result = staking.close_stake(db, position.id)
        assert result["asset_id"] == "USD"
        assert ledger.get_balance(db, "alice", "USD") == Decimal("600")
    finally:
        db.close()
