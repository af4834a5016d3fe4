# chaoscanvas/tests/test_storage.py
import sqlite3
from decimal import Decimal

import pytest

from chaoscanvas.errors import InsufficientFunds, InvalidState, NotFound, ValidationError
from chaoscanvas.models import TransactionKind
from chaoscanvas.storage import InMemoryLedgerStore, SQLiteLedgerStore, make_ledger_store

from conftest import add_text_contribution


def test_new_user_starts_with_default_coins(store):
    u = store.create_user(username="alice")
    assert u.chaos_coins == 100
    assert u.daily_contribution_count == 0
    again = store.get_user(u.id)
    assert again.username == "alice"
    assert store.get_balance(u.id) == 100


def test_anonymous_usernames_do_not_collide(store):
    # the clock is frozen, so every guest is minted in the same millisecond
    a = store.create_user()
    b = store.create_user()
    assert a.username.startswith("guest_")
    assert b.username.startswith("guest_")
    assert a.username != b.username


def test_duplicate_username_rejected(store):
    store.create_user(username="alice")
    with pytest.raises(ValidationError):
        store.create_user(username="alice")


def test_missing_user_is_not_found(store):
    with pytest.raises(NotFound):
        store.get_user("nope")
    with pytest.raises(NotFound):
        store.get_balance("nope")


def test_set_balance_refuses_negative(store):
    u = store.create_user(username="alice")
    with pytest.raises(InvalidState):
        store.set_balance(u.id, -1)
    assert store.get_balance(u.id) == 100
    store.set_balance(u.id, 0)
    assert store.get_balance(u.id) == 0


def test_debit_is_conditional(store):
    u = store.create_user(username="alice", starting_coins=10)
    with pytest.raises(InsufficientFunds) as ei:
        store.debit(u.id, 11)
    assert ei.value.details == {"balance": 10, "required": 11}
    assert store.get_balance(u.id) == 10
    assert store.debit(u.id, 10) == 0


def test_transaction_rolls_back_every_write(store, layer):
    u = store.create_user(username="alice")
    c = add_text_contribution(store, u.id, layer.id)

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.debit(u.id, 30)
            store.increment_boost_count(c.id)
            store.record_transaction(u.id, TransactionKind.BOOST, -30, contribution_id=c.id)
            raise RuntimeError("boom")

    assert store.get_balance(u.id) == 100
    assert store.get_contribution(c.id).boost_count == 0
    assert store.list_transactions(u.id) == []


def test_nested_failure_rolls_back_outer_unit(store):
    u = store.create_user(username="alice", starting_coins=5)
    with pytest.raises(InsufficientFunds):
        with store.transaction():
            store.credit(u.id, 1)
            store.debit(u.id, 50)
    assert store.get_balance(u.id) == 5


def test_transactions_newest_first_with_limit(store, clock):
    u = store.create_user(username="alice")
    for i in range(5):
        store.record_transaction(u.id, TransactionKind.PURCHASE, i + 1)
        clock.advance(seconds=1)
    txs = store.list_transactions(u.id, limit=3)
    assert [t.amount for t in txs] == [5, 4, 3]


def test_transactions_same_timestamp_keep_append_order(store):
    u = store.create_user(username="alice")
    store.record_transaction(u.id, TransactionKind.EARNED, 1)
    store.record_transaction(u.id, TransactionKind.EARNED, 2)
    assert [t.amount for t in store.list_transactions(u.id)] == [2, 1]


def test_market_price_must_stay_positive(store, layer):
    u = store.create_user(username="alice")
    c = add_text_contribution(store, u.id, layer.id)
    with pytest.raises(ValidationError):
        store.set_market_price(c.id, Decimal("0"))
    store.set_market_price(c.id, Decimal("11.005"))
    assert store.get_contribution(c.id).market_price == Decimal("11.01")


def test_insert_contribution_requires_user_and_layer(store, layer):
    u = store.create_user(username="alice")
    with pytest.raises(NotFound):
        add_text_contribution(store, "ghost", layer.id)
    with pytest.raises(NotFound):
        add_text_contribution(store, u.id, "no-layer")
    assert store.list_contributions_by_user(u.id) == []


def test_contribution_round_trip(store, layer):
    u = store.create_user(username="alice")
    c = add_text_contribution(store, u.id, layer.id)
    got = store.get_contribution(c.id)
    assert got == c
    assert got.market_price == Decimal("10.00")
    assert [x.id for x in store.list_contributions_by_layer(layer.id)] == [c.id]
    assert store.increment_view_count(c.id) == 1


def test_merge_users_moves_contributions(store, layer):
    anon = store.create_user()
    reg = store.create_user(username="bob", is_anonymous=False)
    c = add_text_contribution(store, anon.id, layer.id)
    merged = store.merge_users(anon.id, reg.id)
    assert merged.merged_from_anonymous == anon.id
    assert store.get_contribution(c.id).user_id == reg.id
    assert store.list_contributions_by_user(anon.id) == []


def test_investment_starts_at_purchase_price(store, layer):
    u = store.create_user(username="alice")
    c = add_text_contribution(store, u.id, layer.id, price="12.50")
    inv = store.insert_investment(
        user_id=u.id, contribution_id=c.id, amount=5, purchase_price=Decimal("12.50")
    )
    assert inv.current_value == inv.purchase_price == Decimal("12.50")
    assert store.list_investments_by_user(u.id) == [inv]


def test_investments_by_contribution_newest_first(store, layer):
    alice = store.create_user(username="alice")
    bob = store.create_user(username="bob")
    c = add_text_contribution(store, alice.id, layer.id)
    other = add_text_contribution(store, alice.id, layer.id)
    first = store.insert_investment(
        user_id=alice.id, contribution_id=c.id, amount=5, purchase_price=Decimal("10.00")
    )
    second = store.insert_investment(
        user_id=bob.id, contribution_id=c.id, amount=7, purchase_price=Decimal("11.00")
    )
    store.insert_investment(
        user_id=bob.id, contribution_id=other.id, amount=1, purchase_price=Decimal("10.00")
    )
    assert store.list_investments_by_contribution(c.id) == [second, first]
    assert store.list_investments_by_contribution("missing") == []


def test_bubble_round_trip(store, layer):
    owner = store.create_user(username="alice")
    guest = store.create_user(username="bob")
    b = store.create_bubble(
        owner_id=owner.id,
        name="Meme lab",
        invited_user_ids=[guest.id],
        theme_data={"palette": "neon"},
        layer_id=layer.id,
    )
    assert b.is_private is True
    assert b.invited_user_ids == (guest.id,)
    assert store.get_bubble(b.id) == b

    public = store.create_bubble(owner_id=owner.id, name="Open floor", is_private=False)
    assert public.theme_data is None and public.layer_id is None
    assert [x.id for x in store.list_bubbles_by_owner(owner.id)] == [b.id, public.id]
    assert store.list_bubbles_by_owner(guest.id) == []


def test_bubble_requires_owner_and_layer(store, layer):
    with pytest.raises(NotFound):
        store.create_bubble(owner_id="ghost", name="x")
    owner = store.create_user(username="alice")
    with pytest.raises(NotFound):
        store.create_bubble(owner_id=owner.id, name="x", layer_id="no-such-layer")
    with pytest.raises(NotFound):
        store.get_bubble("missing")
    assert store.list_bubbles_by_owner(owner.id) == []


def test_sqlite_transaction_log_is_append_only(tmp_path):
    s = SQLiteLedgerStore(str(tmp_path / "ledger.db"))
    u = s.create_user(username="alice")
    s.record_transaction(u.id, TransactionKind.PURCHASE, 100)
    conn = s._db._conn
    with pytest.raises(sqlite3.DatabaseError):
        conn.execute("UPDATE transactions SET amount = 0")
    with pytest.raises(sqlite3.DatabaseError):
        conn.execute("DELETE FROM transactions")
    assert [t.amount for t in s.list_transactions(u.id)] == [100]
    s.close()


def test_sqlite_survives_reopen(tmp_path):
    path = str(tmp_path / "ledger.db")
    s = SQLiteLedgerStore(path)
    u = s.create_user(username="alice")
    s.debit(u.id, 40)
    s.close()

    s2 = SQLiteLedgerStore(path)
    assert s2.get_balance(u.id) == 60
    s2.close()


def test_make_ledger_store_dsn():
    assert isinstance(make_ledger_store(None), InMemoryLedgerStore)
    assert isinstance(make_ledger_store("mem://"), InMemoryLedgerStore)
    s = make_ledger_store("sqlite:///:memory:")
    assert isinstance(s, SQLiteLedgerStore)
    s.close()
    for dsn in ("postgres://localhost/db", "redis://localhost"):
        with pytest.raises(ValueError):
            make_ledger_store(dsn)
