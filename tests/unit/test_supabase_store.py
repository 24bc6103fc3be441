from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from storefront.errors import (
    DuplicateOrderNumber,
    EventAlreadyProcessed,
    OrderNotFound,
    StaleTransition,
    StoreUnavailable,
)
from storefront.orders.models import PAID, PENDING_PAYMENT, ProcessedEvent, Provider
from storefront.orders.repository import SupabaseOrderStore, order_to_row, row_to_order


def _client_returning(data):
    client = MagicMock()
    res = MagicMock()
    res.data = data
    # Toute chaîne table(...).select/eq/limit/update/insert(...).execute() renvoie res
    chain = client.table.return_value
    for name in ("select", "eq", "limit", "update", "insert", "delete"):
        getattr(chain, name).return_value = chain
    chain.execute.return_value = res
    client.rpc.return_value.execute.return_value = res
    return client


def test_row_mapping_round_trips_payment_columns(make_order):
    order = make_order()

    row = order_to_row(order)

    assert row["payment_status"] == "pending"
    assert row["grand_total"] == "49.99"
    assert "totals" not in row and "payment" not in row
    assert row_to_order(row) == order


def test_insert_maps_unique_violation_to_duplicate(make_order):
    order = make_order()
    client = _client_returning([])
    client.table.return_value.insert.return_value.execute.side_effect = APIError(
        {"message": "duplicate key value violates unique constraint", "code": "23505"}
    )
    store = SupabaseOrderStore(client_factory=lambda: client)

    with pytest.raises(DuplicateOrderNumber):
        store.insert(order)


def test_insert_other_errors_are_store_unavailable(make_order):
    client = _client_returning([])
    client.table.return_value.insert.return_value.execute.side_effect = APIError(
        {"message": "boom", "code": "XX000"}
    )
    store = SupabaseOrderStore(client_factory=lambda: client)

    with pytest.raises(StoreUnavailable):
        store.insert(make_order())


def test_get_reads_orders_table(make_order):
    order = make_order()
    client = _client_returning([order_to_row(order)])
    store = SupabaseOrderStore(client_factory=lambda: client)

    assert store.get(order.id) == order
    client.table.assert_called_with("orders")


def test_apply_transition_calls_rpc_with_expected_state(make_order):
    order = make_order()
    paid_row = order_to_row(order.model_copy(update={"status": PAID.order}))
    paid_row["payment_status"] = PAID.payment.value
    client = _client_returning({"result": "applied", "order": paid_row})
    store = SupabaseOrderStore(client_factory=lambda: client)
    event = ProcessedEvent(provider=Provider.STRIPE, provider_event_id="evt_1")

    updated = store.apply_transition(order.id, PENDING_PAYMENT, PAID, event, {"charge_id": "ch_1"})

    assert updated.joint_state == PAID
    name, params = client.rpc.call_args.args
    assert name == "apply_payment_transition"
    assert params["p_expected_status"] == "pending"
    assert params["p_expected_payment_status"] == "pending"
    assert params["p_target_status"] == "processing"
    assert params["p_target_payment_status"] == "succeeded"
    assert params["p_event_id"] == "evt_1"
    assert params["p_charge_id"] == "ch_1"
    assert params["p_payment_provider"] is None


@pytest.mark.parametrize(
    "result,error",
    [("duplicate", EventAlreadyProcessed), ("stale", StaleTransition), ("missing", OrderNotFound), ("???", StoreUnavailable)],
)
def test_apply_transition_maps_rpc_results(make_order, result, error):
    client = _client_returning({"result": result})
    store = SupabaseOrderStore(client_factory=lambda: client)
    event = ProcessedEvent(provider=Provider.STRIPE, provider_event_id="evt_1")

    with pytest.raises(error):
        store.apply_transition("o1", PENDING_PAYMENT, PAID, event)


def test_network_failure_is_store_unavailable():
    client = _client_returning([])
    client.table.return_value.execute.side_effect = ConnectionError("down")
    store = SupabaseOrderStore(client_factory=lambda: client)

    with pytest.raises(StoreUnavailable):
        store.is_processed(Provider.STRIPE, "evt_1")


def test_attach_intent_miss_returns_none():
    client = _client_returning({"result": "stale"})
    store = SupabaseOrderStore(client_factory=lambda: client)

    assert store.attach_intent("o1", Provider.STRIPE, "pi_1") is None
    assert client.rpc.call_args.args[0] == "attach_payment_intent"


def test_attach_intent_goes_through_rpc(make_order):
    order = make_order()
    attached = order_to_row(order)
    attached["payment_provider"] = "bkash"
    attached["payment_intent_id"] = "PAY1"
    client = _client_returning({"result": "attached", "order": attached})
    store = SupabaseOrderStore(client_factory=lambda: client)

    updated = store.attach_intent(order.id, Provider.BKASH, "PAY1")

    assert updated.payment.intent_id == "PAY1"
    name, params = client.rpc.call_args.args
    assert name == "attach_payment_intent"
    assert params == {"p_order_id": order.id, "p_provider": "bkash", "p_intent_id": "PAY1"}


def test_find_by_payment_ref_falls_back_to_issued_intents(make_order):
    order = make_order()
    client = MagicMock()
    chain = client.table.return_value
    for name in ("select", "eq", "limit"):
        getattr(chain, name).return_value = chain
    # orders (intention courante) -> vide, payment_intents -> order_id, orders (get) -> ligne
    chain.execute.side_effect = [
        MagicMock(data=[]),
        MagicMock(data=[{"order_id": order.id}]),
        MagicMock(data=[order_to_row(order)]),
    ]
    store = SupabaseOrderStore(client_factory=lambda: client)

    found = store.find_by_payment_ref(Provider.BKASH, intent_id="PAY1")

    assert found == order
    assert [c.args[0] for c in client.table.call_args_list] == ["orders", "payment_intents", "orders"]


def test_append_note_concatenates_in_sql(make_order):
    order = make_order()
    noted = order_to_row(order.model_copy(update={"notes": "Refund: n/a - Amount: 49.99"}))
    client = _client_returning(noted)
    store = SupabaseOrderStore(client_factory=lambda: client)

    updated = store.append_note(order.id, "Refund: n/a - Amount: 49.99")

    assert updated.notes == "Refund: n/a - Amount: 49.99"
    client.rpc.assert_called_once_with(
        "append_order_note", {"p_order_id": order.id, "p_note": "Refund: n/a - Amount: 49.99"}
    )
    client.table.assert_not_called()


def test_transition_status_is_conditional_update(make_order):
    from storefront.orders.models import JointState, OrderStatus, PaymentStatus

    order = make_order()
    shipped = JointState(OrderStatus.SHIPPED, PaymentStatus.SUCCEEDED)
    row = order_to_row(order)
    row.update({"status": "shipped", "payment_status": "succeeded", "tracking_number": "TRK1"})
    client = _client_returning([row])
    store = SupabaseOrderStore(client_factory=lambda: client)

    updated = store.transition_status(order.id, PAID, shipped, {"tracking_number": "TRK1"})

    assert updated.joint_state == shipped
    chain = client.table.return_value
    payload = chain.update.call_args.args[0]
    assert payload["status"] == "shipped"
    assert payload["tracking_number"] == "TRK1"
    eq_calls = [c.args for c in chain.eq.call_args_list]
    assert ("status", "processing") in eq_calls
    assert ("payment_status", "succeeded") in eq_calls


def test_transition_status_miss_is_stale(make_order):
    order = make_order()
    client = _client_returning([])
    store = SupabaseOrderStore(client_factory=lambda: client)
    client.table.return_value.execute.side_effect = [MagicMock(data=[]), MagicMock(data=[order_to_row(order)])]

    with pytest.raises(StaleTransition):
        store.transition_status(order.id, PAID, PAID)


def test_list_orders_uses_exact_count(make_order):
    order = make_order()
    client = _client_returning([order_to_row(order)])
    client.table.return_value.order.return_value = client.table.return_value
    client.table.return_value.range.return_value = client.table.return_value
    client.table.return_value.execute.return_value.count = 7
    store = SupabaseOrderStore(client_factory=lambda: client)

    page, total = store.list_orders(user_id="test-user", status="pending", limit=5, offset=5)

    assert page == [order]
    assert total == 7
    chain = client.table.return_value
    chain.select.assert_called_with("*", count="exact")
    chain.range.assert_called_with(5, 9)
