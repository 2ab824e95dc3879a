from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.errors import ErrorKind, UnknownProduct
from app.models import ProductSnapshot, RequestedItem
from app.pricing import price_items

CATALOG = [
    ProductSnapshot(id="A", name="Widget", price=Decimal("10")),
    ProductSnapshot(id="B", name="Gadget", price=Decimal("5")),
    ProductSnapshot(id="C", name="Gizmo", price=Decimal("19.99")),
]


def items(*pairs):
    return [RequestedItem(product_id=pid, quantity=qty) for pid, qty in pairs]


def test_totals_from_catalog_prices():
    priced = price_items(items(("A", 2), ("B", 1)), CATALOG)

    assert priced.total_amount == Decimal("25")
    assert priced.total_items == 3
    assert [(line.product_id, line.price, line.quantity) for line in priced.lines] == [
        ("A", Decimal("10"), 2),
        ("B", Decimal("5"), 1),
    ]


def test_decimal_totals_have_no_rounding_drift():
    requested = items(("C", 3), ("C", 7), ("A", 1))

    results = {price_items(requested, CATALOG).total_amount for _ in range(50)}

    assert results == {Decimal("209.90")}


def test_duplicate_product_lines_are_priced_separately():
    priced = price_items(items(("A", 1), ("B", 4), ("A", 2)), CATALOG)

    assert [line.product_id for line in priced.lines] == ["A", "B", "A"]
    assert [line.quantity for line in priced.lines] == [1, 4, 2]
    assert priced.total_amount == Decimal("50")
    assert priced.total_items == 7


def test_unknown_product_aborts_pricing():
    with pytest.raises(UnknownProduct) as exc_info:
        price_items(items(("A", 1), ("Z", 1)), CATALOG)

    assert exc_info.value.product_id == "Z"
    assert exc_info.value.kind is ErrorKind.UNKNOWN_PRODUCT


def test_empty_catalog_rejects_everything():
    with pytest.raises(UnknownProduct):
        price_items(items(("A", 1)), [])


def test_numeric_ids_match_string_ids():
    catalog = [ProductSnapshot(id=7, name="Bolt", price="0.25")]

    priced = price_items([RequestedItem(product_id=7, quantity=4)], catalog)

    assert priced.lines[0].product_id == "7"
    assert priced.total_amount == Decimal("1.00")


@pytest.mark.parametrize("price", ["0.335", "-1", "123456789.00"])
def test_catalog_prices_must_fit_the_stored_precision(price):
    with pytest.raises(ValidationError):
        ProductSnapshot(id="A", name="Widget", price=price)


def test_two_decimal_catalog_prices_are_accepted():
    assert ProductSnapshot(id="A", name="Widget", price="0.34").price == Decimal("0.34")
