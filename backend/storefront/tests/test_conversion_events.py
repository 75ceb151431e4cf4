"""Unit tests for ConversionEvent, the builders and pricing policies.

WHAT:
    Checks how checkout sessions and carts become ConversionEvents and how
    the single pricing policy shapes line items.

REFERENCES:
    - storefront/services/conversion_events.py (module under test)
"""

import logging
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from storefront.services.conversion_events import (
    CartItem,
    CatalogPricing,
    ConversionEvent,
    FixedUnitPricing,
    LineItem,
    TrackingParameters,
    build_line_items,
    conversion_event_from_cart,
    conversion_event_from_checkout_session,
    pricing_policy_from_settings,
)


class TestTrackingParameters:

    def test_from_mapping_keeps_known_keys_only(self):
        params = TrackingParameters.from_mapping(
            {"utm_source": "facebook", "utm_medium": " cpc ", "gclid": "abc", "utm_term": ""}
        )
        assert params.utm_source == "facebook"
        assert params.utm_medium == "cpc"
        assert params.utm_term is None
        assert "gclid" not in params.as_mapping()

    def test_empty(self):
        assert TrackingParameters.from_mapping(None).is_empty()
        assert not TrackingParameters(utm_campaign="x").is_empty()


class TestConversionEvent:

    def test_negative_total_rejected(self):
        with pytest.raises(ValidationError):
            ConversionEvent(order_id="cs_1", amount_total_minor_units=-1)

    def test_zero_quantity_rejected(self):
        with pytest.raises(ValidationError):
            LineItem(product_id="p", name="P", quantity=0, unit_price_minor_units=100)

    def test_total_not_forced_to_match_line_items(self, make_event):
        """WHAT: A mismatched total is representable, not silently fixed."""
        event = make_event(amount_total_minor_units=5000)
        assert event.line_items_total() == 4999
        assert not event.has_consistent_total()

    def test_content_ids_and_num_items(self, make_event):
        event = make_event(
            line_items=[
                LineItem(product_id="a", name="A", quantity=2, unit_price_minor_units=100),
                LineItem(product_id="b", name="B", quantity=1, unit_price_minor_units=300),
            ],
            amount_total_minor_units=500,
        )
        assert event.content_ids == ["a", "b"]
        assert event.num_items == 3
        assert event.has_consistent_total()


class TestCheckoutSessionBuilder:

    def test_session_id_becomes_order_id(self, paid_session):
        event = conversion_event_from_checkout_session(paid_session)
        assert event.order_id == "cs_test_123"
        assert event.status == "paid"
        assert event.currency == "gbp"
        assert event.occurred_at == datetime.fromtimestamp(1714564800, tz=timezone.utc)

    def test_utms_from_metadata(self, paid_session):
        event = conversion_event_from_checkout_session(paid_session)
        assert event.tracking_parameters.utm_source == "facebook"
        assert event.tracking_parameters.utm_campaign == "spring"

    def test_utm_params_override_metadata(self, paid_session):
        paid_session["utm_params"] = {"utm_source": "tiktok", "utm_medium": None}
        event = conversion_event_from_checkout_session(paid_session)
        assert event.tracking_parameters.utm_source == "tiktok"
        assert event.tracking_parameters.utm_campaign == "spring"

    def test_default_single_line_item_for_total(self, paid_session):
        event = conversion_event_from_checkout_session(paid_session)
        assert len(event.line_items) == 1
        assert event.line_items[0].product_id == "perfume_001"
        assert event.line_items[0].unit_price_minor_units == 9998
        assert event.has_consistent_total()

    def test_processor_line_items(self, paid_session):
        items = [{"price_id": "price_abc", "description": "Rose", "quantity": 2, "amount_total": 9998}]
        event = conversion_event_from_checkout_session(paid_session, line_items=items)
        assert event.line_items[0].product_id == "price_abc"
        assert event.line_items[0].unit_price_minor_units == 4999
        assert event.num_items == 2

    def test_unpaid_session_is_waiting_payment(self, paid_session):
        paid_session["payment_status"] = "unpaid"
        event = conversion_event_from_checkout_session(paid_session)
        assert event.status == "waiting_payment"

    def test_missing_id_raises(self, paid_session):
        del paid_session["id"]
        with pytest.raises(ValueError):
            conversion_event_from_checkout_session(paid_session)

    def test_inconsistent_total_logs_warning(self, paid_session, caplog):
        items = [{"price_id": "p", "quantity": 1, "amount_total": 100}]
        with caplog.at_level(logging.WARNING):
            event = conversion_event_from_checkout_session(paid_session, line_items=items)
        assert not event.has_consistent_total()
        assert "Total does not match line items" in caplog.text

    def test_customer_id_string_is_not_treated_as_details(self, paid_session):
        """WHAT: `customer` holds a bare id when customer_details is null."""
        paid_session["customer_details"] = None
        paid_session["customer"] = "cus_123"

        event = conversion_event_from_checkout_session(paid_session)

        assert event.customer.name == "Customer"
        assert event.customer.email == ""

    def test_processor_unit_amount_preferred_over_division(self, paid_session):
        items = [
            {
                "price": {"id": "price_abc", "unit_amount": 1000, "product": "prod_rose"},
                "quantity": 3,
                "amount_total": 1000,
            }
        ]
        event = conversion_event_from_checkout_session(paid_session, line_items=items)
        assert event.line_items[0].product_id == "prod_rose"
        assert event.line_items[0].unit_price_minor_units == 1000

    def test_indivisible_line_total_logs_warning(self, paid_session, caplog):
        items = [{"price_id": "p", "quantity": 3, "amount_total": 1000}]
        with caplog.at_level(logging.WARNING):
            event = conversion_event_from_checkout_session(paid_session, line_items=items)
        assert event.line_items[0].unit_price_minor_units == 333
        assert "unit price rounded down" in caplog.text

    def test_expanded_line_item_list(self, paid_session):
        paid_session["line_items"] = {
            "object": "list",
            "data": [{"price": {"id": "price_abc", "unit_amount": 4999}, "quantity": 2}],
        }
        event = conversion_event_from_checkout_session(paid_session)
        assert event.line_items[0].product_id == "price_abc"
        assert event.has_consistent_total()

    def test_fixed_pricing_applies_to_session_lines(self, paid_session):
        event = conversion_event_from_checkout_session(paid_session, pricing=FixedUnitPricing(4990))
        assert event.line_items[0].unit_price_minor_units == 4990
        assert event.amount_total_minor_units == 9998


class TestPricing:

    def test_catalog_keeps_item_price(self):
        items = build_line_items([CartItem(product_id="p", unit_price_minor_units=2500, quantity=2)])
        assert items[0].unit_price_minor_units == 2500
        assert items[0].total_minor_units == 5000

    def test_fixed_price_applies_to_every_unit(self):
        cart = [
            CartItem(product_id="a", unit_price_minor_units=2500, quantity=2),
            CartItem(product_id="b", unit_price_minor_units=8000),
        ]
        items = build_line_items(cart, FixedUnitPricing(1990))
        assert [i.unit_price_minor_units for i in items] == [1990, 1990]

    def test_fixed_price_must_be_non_negative(self):
        with pytest.raises(ValueError):
            FixedUnitPricing(-1)

    def test_policy_from_settings(self):
        assert isinstance(
            pricing_policy_from_settings(SimpleNamespace(FIXED_UNIT_PRICE_MINOR_UNITS=None)),
            CatalogPricing,
        )
        policy = pricing_policy_from_settings(SimpleNamespace(FIXED_UNIT_PRICE_MINOR_UNITS=1990))
        assert isinstance(policy, FixedUnitPricing)
        assert policy.unit_price_minor_units == 1990


class TestCartBuilder:

    def test_generated_client_id_and_total(self):
        event = conversion_event_from_cart(
            [CartItem(product_id="p", unit_price_minor_units=1500, quantity=3)]
        )
        assert event.order_id.startswith("client_")
        assert event.amount_total_minor_units == 4500
        assert event.platform == "stripe_client"
        assert event.has_consistent_total()

    def test_supplied_order_id_is_kept(self):
        event = conversion_event_from_cart(
            [CartItem(product_id="p", unit_price_minor_units=1500)],
            order_id="cs_test_123",
            pricing=FixedUnitPricing(1000),
        )
        assert event.order_id == "cs_test_123"
        assert event.amount_total_minor_units == 1000
