# chaoscanvas/tests/test_economy.py
import threading
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from chaoscanvas.economy import BoostEngine
from chaoscanvas.errors import Fatal, InsufficientFunds, NotFound, ValidationError
from chaoscanvas.models import TransactionKind
from chaoscanvas.notifier import ChangeNotifier
from chaoscanvas.storage import InMemoryLedgerStore

from conftest import RecordingSink, add_text_contribution


@pytest.fixture
def engine(store, notifier):
    return BoostEngine(store, notifier)


@pytest.fixture
def world(store, layer):
    booster = store.create_user(username="alice")
    author = store.create_user(username="bob")
    c = add_text_contribution(store, author.id, layer.id)
    return booster, author, c


def test_boost_moves_coins_and_reprices(engine, store, world):
    booster, author, c = world

    updated = engine.boost(c.id, booster.id, 20)

    assert store.get_balance(booster.id) == 80
    assert store.get_balance(author.id) == 110
    assert updated.boost_count == 1
    assert updated.market_price == Decimal("11.00")

    (spent,) = store.list_transactions(booster.id)
    assert spent.kind is TransactionKind.BOOST
    assert spent.amount == -20
    assert spent.contribution_id == c.id
    (earned,) = store.list_transactions(author.id)
    assert earned.kind is TransactionKind.EARNED
    assert earned.amount == 10
    assert earned.description == "Earned from boost by alice"


def test_boost_price_compounds_with_rounding(engine, store, world):
    booster, _, c = world
    prices = [engine.boost(c.id, booster.id, 1).market_price for _ in range(3)]
    assert prices == [Decimal("11.00"), Decimal("12.10"), Decimal("13.31")]


def test_odd_amount_share_is_floored(engine, store, world):
    booster, author, c = world
    engine.boost(c.id, booster.id, 3)
    assert store.get_balance(booster.id) == 97
    assert store.get_balance(author.id) == 101


def test_insufficient_funds_changes_nothing(engine, store, world, notifier):
    booster, author, c = world
    watcher = RecordingSink()
    notifier.join(watcher, c.layer_id)

    with pytest.raises(InsufficientFunds):
        engine.boost(c.id, booster.id, 101)

    assert store.get_balance(booster.id) == 100
    assert store.get_balance(author.id) == 100
    after = store.get_contribution(c.id)
    assert after.boost_count == 0
    assert after.market_price == Decimal("10.00")
    assert store.list_transactions(booster.id) == []
    assert store.list_transactions(author.id) == []
    assert watcher.events == []


@pytest.mark.parametrize("failing", ["record_transaction", "set_market_price"])
def test_storage_failure_mid_boost_rolls_back_everything(engine, store, world, notifier, monkeypatch, failing):
    booster, author, c = world
    watcher = RecordingSink()
    notifier.join(watcher, c.layer_id)

    def _boom(*args, **kwargs):
        raise Fatal("disk full")

    # the debit and the boost counter are already written when this fires
    monkeypatch.setattr(store, failing, _boom)
    with pytest.raises(Fatal):
        engine.boost(c.id, booster.id, 20)
    monkeypatch.undo()

    assert store.get_balance(booster.id) == 100
    assert store.get_balance(author.id) == 100
    after = store.get_contribution(c.id)
    assert after.boost_count == 0
    assert after.market_price == Decimal("10.00")
    assert store.list_transactions(booster.id) == []
    assert store.list_transactions(author.id) == []
    assert watcher.events == []

    # the store is still usable afterwards
    assert engine.boost(c.id, booster.id, 20).boost_count == 1
    assert store.get_balance(booster.id) == 80


@pytest.mark.parametrize("amount", [0, -5, 2.5, "10", True])
def test_boost_amount_must_be_positive_int(engine, store, world, amount):
    booster, _, c = world
    with pytest.raises(ValidationError):
        engine.boost(c.id, booster.id, amount)
    assert store.get_balance(booster.id) == 100


def test_boost_unknown_parties(engine, store, world):
    booster, _, c = world
    with pytest.raises(NotFound):
        engine.boost("missing", booster.id, 5)
    with pytest.raises(NotFound):
        engine.boost(c.id, "ghost", 5)
    assert store.get_balance(booster.id) == 100


def test_self_boost_nets_out_the_share(engine, store, world):
    _, author, c = world
    engine.boost(c.id, author.id, 20)
    assert store.get_balance(author.id) == 90
    kinds = sorted(t.kind.value for t in store.list_transactions(author.id))
    assert kinds == ["boost", "earned"]


def test_boost_publishes_update_after_commit(engine, store, world, notifier):
    booster, _, c = world
    watcher = RecordingSink()
    notifier.join(watcher, c.layer_id)

    engine.boost(c.id, booster.id, 20)

    assert watcher.events == [
        {
            "type": "contribution_updated",
            "contributionId": c.id,
            "boostCount": 1,
            "marketPrice": "11.00",
        }
    ]


def test_invest_records_position_at_market_price(engine, store, world):
    booster, _, c = world
    engine.boost(c.id, booster.id, 10)

    inv = engine.invest(c.id, booster.id, 50)

    assert inv.purchase_price == Decimal("11.00")
    assert inv.current_value == Decimal("11.00")
    assert store.get_balance(booster.id) == 40
    latest = store.list_transactions(booster.id)[0]
    assert latest.kind is TransactionKind.INVESTMENT
    assert latest.amount == -50
    assert store.list_investments_by_user(booster.id) == [inv]


def test_invest_insufficient_funds(engine, store, world):
    booster, _, c = world
    with pytest.raises(InsufficientFunds):
        engine.invest(c.id, booster.id, 500)
    assert store.list_investments_by_user(booster.id) == []
    assert store.get_balance(booster.id) == 100


def test_purchase_coins(engine, store, world):
    booster, _, _ = world
    receipt = engine.purchase_coins(booster.id, "500")
    assert receipt.new_balance == 600
    assert receipt.coins == 500
    (tx,) = store.list_transactions(booster.id)
    assert tx.kind is TransactionKind.PURCHASE
    assert tx.amount == 500
    assert tx.description == "Purchased 500 ChaosCoins"


def test_purchase_unknown_package(engine, store, world):
    booster, _, _ = world
    with pytest.raises(ValidationError):
        engine.purchase_coins(booster.id, "999999")
    assert store.get_balance(booster.id) == 100
    with pytest.raises(NotFound):
        engine.purchase_coins("ghost", "100")


def test_concurrent_boosts_never_overdraw(engine, store, world):
    booster, author, c = world
    outcomes = []
    lock = threading.Lock()

    def worker():
        try:
            engine.boost(c.id, booster.id, 20)
            result = "ok"
        except InsufficientFunds:
            result = "rejected"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 5
    assert outcomes.count("rejected") == 7
    assert store.get_balance(booster.id) == 0
    assert store.get_balance(author.id) == 150
    assert store.get_contribution(c.id).boost_count == 5
    assert len(store.list_transactions(booster.id)) == 5


@settings(max_examples=60, deadline=None)
@given(
    start=st.integers(min_value=0, max_value=200),
    ops=st.lists(
        st.tuples(st.sampled_from(["boost", "invest", "purchase"]), st.integers(1, 150)),
        max_size=25,
    ),
)
def test_balances_never_go_negative(start, ops):
    store = InMemoryLedgerStore()
    eng = BoostEngine(store, ChangeNotifier())
    layer = store.create_layer(layer_type="global", name="g")
    a = store.create_user(username="a", starting_coins=start)
    b = store.create_user(username="b", starting_coins=start)
    c = add_text_contribution(store, b.id, layer.id)

    for op, amount in ops:
        before = store.get_balance(a.id)
        try:
            if op == "boost":
                eng.boost(c.id, a.id, amount)
            elif op == "invest":
                eng.invest(c.id, a.id, amount)
            else:
                eng.purchase_coins(a.id, "100")
        except InsufficientFunds:
            assert amount > before
            assert store.get_balance(a.id) == before
        assert store.get_balance(a.id) >= 0
        assert store.get_balance(b.id) >= 0

    # every coin the booster holds is explained by the log
    logged = sum(t.amount for t in store.list_transactions(a.id, limit=1000))
    assert store.get_balance(a.id) == start + logged
