import re
from datetime import timedelta

import pytest

from cart import CartLedger
from conftest import T0
from order import (
    CheckoutError,
    CustomerInfo,
    Order,
    OrderType,
    apply_estimated_time,
    build_order,
    compute_totals,
    generate_order_id,
)
from order_state import OrderStatus, IllegalTransition


@pytest.fixture
def filled_cart(pizza, fries):
    cart = CartLedger()
    cart.add_to_cart(pizza, 2, variant="Large", addons=["Cheese"])
    cart.add_to_cart(fries, 1)
    return cart


@pytest.fixture
def customer():
    return CustomerInfo(first_name="Asha", phone="9876543210", address="12 MG Road")


def test_checkout_freezes_cart_lines(filled_cart, customer):
    order = build_order(filled_cart.snapshot(), customer, OrderType.DINE_IN, "cash", now=T0)

    assert order.status == OrderStatus.PENDING
    assert order.restaurant_id == "r1"
    assert order.created_at == T0
    assert [(i.fingerprint, i.quantity, i.unit_price) for i in order.items] == [
        ("p1_Large_Cheese", 2, 290.0),
        ("f1_default_none", 1, 90.0),
    ]
    assert order.items[0].variant == "Large"
    assert order.items[0].addons == ("Cheese",)
    assert order.subtotal == 670.0
    assert order.total == 670.0
    assert order.validate() == (True, [])
    assert order.verify_integrity()


def test_delivery_fee_applies_only_to_delivery(filled_cart, customer):
    takeaway = build_order(filled_cart.snapshot(), customer, OrderType.TAKEAWAY, "upi", now=T0, delivery_fee=40.0)
    delivery = build_order(filled_cart.snapshot(), customer, OrderType.DELIVERY, "upi", now=T0, delivery_fee=40.0)

    assert takeaway.delivery_fee == 0.0
    assert takeaway.total == 670.0
    assert delivery.delivery_fee == 40.0
    assert delivery.total == 710.0


def test_tax_and_discount(filled_cart, customer):
    order = build_order(
        filled_cart.snapshot(), customer, OrderType.DELIVERY, "card",
        now=T0, delivery_fee=30.0, tax_rate=0.05, discount=50.0,
    )

    assert order.tax == 35.0
    assert order.total == order.subtotal + order.delivery_fee + order.tax - order.discount
    assert order.total == 685.0


def test_empty_cart_cannot_check_out(customer):
    with pytest.raises(CheckoutError):
        build_order(CartLedger().snapshot(), customer, OrderType.DINE_IN, "cash", now=T0)


def test_pre_order_requires_target_time(filled_cart, customer):
    with pytest.raises(CheckoutError):
        build_order(filled_cart.snapshot(), customer, OrderType.PRE_ORDER, "cash", now=T0)

    target = T0 + timedelta(hours=2)
    order = build_order(
        filled_cart.snapshot(), customer, OrderType.PRE_ORDER, "cash",
        now=T0, pre_order_time=target,
    )
    assert order.pre_order_time == target


def test_delivery_requires_address(filled_cart):
    with pytest.raises(CheckoutError):
        build_order(filled_cart.snapshot(), CustomerInfo(phone="9876543210"), OrderType.DELIVERY, "cash", now=T0)


def test_discount_cannot_exceed_bill(filled_cart):
    items = build_order(filled_cart.snapshot(), CustomerInfo(), OrderType.DINE_IN, "cash", now=T0).items

    with pytest.raises(CheckoutError):
        compute_totals(items, discount=1000.0)
    with pytest.raises(CheckoutError):
        compute_totals(items, delivery_fee=-1.0)


def test_guest_order(filled_cart, customer):
    order = build_order(
        filled_cart.snapshot(), customer, OrderType.DINE_IN, "cash",
        now=T0, guest_session_id="g-1",
    )

    assert order.is_guest
    assert order.guest_session_id == "g-1"


def test_order_id_format():
    order_id = generate_order_id(T0)

    assert re.fullmatch(r"ORD2405011200[0-9A-F]{4}", order_id)


def test_tampered_order_fails_integrity(filled_cart, customer):
    from dataclasses import replace

    order = build_order(filled_cart.snapshot(), customer, OrderType.DINE_IN, "cash", now=T0)
    tampered = replace(order, total=1.0)

    assert not tampered.verify_integrity()
    valid, errors = tampered.validate()
    assert not valid
    assert any("Total mismatch" in e for e in errors)


def test_serialization_keeps_timestamps_aware(filled_cart, customer):
    order = build_order(
        filled_cart.snapshot(), customer, OrderType.PRE_ORDER, "cash",
        now=T0, pre_order_time=T0 + timedelta(hours=1),
    )

    restored = Order.from_dict(order.to_dict())

    assert restored == order
    assert restored.created_at.tzinfo is not None


def test_naive_timestamps_read_as_utc(make_order):
    data = make_order().to_dict()
    data["created_at"] = "2024-05-01T12:00:00"

    assert Order.from_dict(data).created_at == T0


def test_elapsed_minutes_are_floored(make_order):
    order = make_order()

    assert order.elapsed_minutes(T0 + timedelta(minutes=15, seconds=59)) == 15
    assert order.elapsed_minutes(T0 - timedelta(minutes=1)) == 0


def test_estimated_minutes_default(make_order):
    assert make_order().estimated_minutes() == 20
    assert make_order(admin_estimated_time=35).estimated_minutes() == 35


def test_estimate_overwrites_minutes(make_order):
    order = make_order(status=OrderStatus.CONFIRMED, admin_estimated_time=20)

    updated = apply_estimated_time(order, 35, T0)

    assert updated.admin_estimated_time == 35
    assert order.admin_estimated_time == 20


def test_estimate_on_pre_order_moves_target_time(make_order):
    target = T0 + timedelta(hours=2)
    order = make_order(status=OrderStatus.CONFIRMED, order_type=OrderType.PRE_ORDER, pre_order_time=target)

    updated = apply_estimated_time(order, 15, T0)

    assert updated.pre_order_time == target + timedelta(minutes=15)
    assert updated.admin_estimated_time is None


def test_estimate_on_pre_order_without_target_counts_from_now(make_order):
    order = make_order(status=OrderStatus.PENDING, order_type=OrderType.PRE_ORDER)

    updated = apply_estimated_time(order, 30, T0)

    assert updated.pre_order_time == T0 + timedelta(minutes=30)


@pytest.mark.parametrize("status", [OrderStatus.READY, OrderStatus.DELIVERED, OrderStatus.CANCELLED])
def test_estimate_rejected_once_ready(make_order, status):
    with pytest.raises(IllegalTransition):
        apply_estimated_time(make_order(status=status), 10, T0)


@pytest.mark.parametrize("minutes", [0, -5, 2.5, True])
def test_estimate_must_be_positive_whole_minutes(make_order, minutes):
    with pytest.raises(ValueError):
        apply_estimated_time(make_order(status=OrderStatus.CONFIRMED), minutes, T0)
