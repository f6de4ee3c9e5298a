"""Checkout creation and ownership gate tests"""
import pytest
import stripe as real_stripe

from storefront.core.errors import (
    AmountTooSmall,
    CheckoutCreationFailed,
    InvalidPlan,
    NotAuthorized,
    PlanUnavailable,
    PreconditionFailed,
    PurchaseDenied,
    TicketNotOpen,
)
from storefront.models.purchase import Purchase
from storefront.schemas.commands import ActorContext
from storefront.services import catalog_service, checkout_service, entitlement_service, ticket_service
from storefront.services.entitlement_service import evaluate_purchase_gate

from conftest import BUYER_ID, GUILD_ID, NOW, OTHER_ID


def own(db_session, product, plan_key, subscription_id=None, source="VT-OWNED"):
    return entitlement_service.upsert_on_paid(
        db_session, GUILD_ID, BUYER_ID, product.id, plan_key,
        subscription_id=subscription_id, source_purchase_id=source, now=NOW,
    )


@pytest.mark.critical
class TestPurchaseGate:
    """Ownership blocks re-purchase; upgrades only from one-time"""

    def test_no_entitlement_allows(self, db_session, product):
        assert evaluate_purchase_gate(db_session, GUILD_ID, BUYER_ID, product.id, "one_time").allowed

    def test_lifetime_blocks_everything(self, db_session, product):
        own(db_session, product, "lifetime")
        for plan in ("one_time", "monthly", "annual", "lifetime"):
            for upgrade in (False, True):
                decision = evaluate_purchase_gate(db_session, GUILD_ID, BUYER_ID, product.id, plan, upgrade)
                assert not decision.allowed
                assert "lifetime" in decision.reason

    def test_owner_must_use_upgrade(self, db_session, product):
        own(db_session, product, "one_time")
        decision = evaluate_purchase_gate(db_session, GUILD_ID, BUYER_ID, product.id, "monthly")
        assert not decision.allowed
        assert "/upgrade" in decision.reason

    def test_upgrade_from_one_time_to_subscription(self, db_session, product):
        own(db_session, product, "one_time")
        assert evaluate_purchase_gate(db_session, GUILD_ID, BUYER_ID, product.id, "monthly", True).allowed
        assert evaluate_purchase_gate(db_session, GUILD_ID, BUYER_ID, product.id, "annual", True).allowed
        assert not evaluate_purchase_gate(db_session, GUILD_ID, BUYER_ID, product.id, "lifetime", True).allowed

    def test_upgrade_refused_from_subscription(self, db_session, product):
        own(db_session, product, "monthly", subscription_id="sub_1")
        decision = evaluate_purchase_gate(db_session, GUILD_ID, BUYER_ID, product.id, "annual", True)
        assert not decision.allowed

    def test_revoked_entitlement_allows_fresh_purchase(self, db_session, product):
        own(db_session, product, "one_time")
        entitlement_service.revoke(db_session, GUILD_ID, BUYER_ID, product.id, actor_id="test", now=NOW)
        assert evaluate_purchase_gate(db_session, GUILD_ID, BUYER_ID, product.id, "one_time").allowed


@pytest.mark.critical
class TestProductCheckout:
    """A checkout session always has a 'created' purchase behind it"""

    def test_one_time_checkout(self, db_session, product, mock_stripe):
        result = checkout_service.start_product_checkout(db_session, GUILD_ID, BUYER_ID, product, "one_time", "REF-9")

        params = mock_stripe.checkout.Session.create.call_args.kwargs
        assert params["mode"] == "payment"
        assert params["line_items"][0]["price_data"]["unit_amount"] == 999
        assert params["line_items"][0]["price_data"]["currency"] == "gbp"
        assert "recurring" not in params["line_items"][0]["price_data"]
        assert params["metadata"]["purchase_id"] == result.purchase_id
        assert params["metadata"]["product_id"] == str(product.id)
        assert params["metadata"]["reference_code"] == "REF-9"
        assert params["metadata"]["upgrade"] == "false"
        assert all(isinstance(v, str) for v in params["metadata"].values())
        assert params["payment_intent_data"]["metadata"] == params["metadata"]

        purchase = db_session.query(Purchase).filter(Purchase.purchase_id == result.purchase_id).one()
        assert purchase.status == "created"
        assert purchase.stripe_session_id == result.session_id
        assert purchase.amount_minor == 999
        assert purchase.role_id == product.role_id

    def test_monthly_checkout_is_subscription(self, db_session, product, mock_stripe):
        checkout_service.start_product_checkout(db_session, GUILD_ID, BUYER_ID, product, "monthly")
        params = mock_stripe.checkout.Session.create.call_args.kwargs
        assert params["mode"] == "subscription"
        assert params["line_items"][0]["price_data"]["recurring"] == {"interval": "month", "interval_count": 1}
        assert params["subscription_data"]["metadata"]["plan_key"] == "monthly"

    def test_disabled_plan(self, db_session, product, mock_stripe):
        with pytest.raises(PlanUnavailable):
            checkout_service.start_product_checkout(db_session, GUILD_ID, BUYER_ID, product, "annual")
        with pytest.raises(InvalidPlan):
            checkout_service.start_product_checkout(db_session, GUILD_ID, BUYER_ID, product, "weekly")
        mock_stripe.checkout.Session.create.assert_not_called()

    def test_gate_checked_at_session_creation(self, db_session, product, mock_stripe):
        own(db_session, product, "lifetime")
        with pytest.raises(PurchaseDenied):
            checkout_service.start_product_checkout(db_session, GUILD_ID, BUYER_ID, product, "one_time")
        mock_stripe.checkout.Session.create.assert_not_called()
        assert db_session.query(Purchase).count() == 0

    def test_stripe_failure_persists_nothing(self, db_session, product, mock_stripe):
        mock_stripe.checkout.Session.create.side_effect = real_stripe.StripeError("boom")
        with pytest.raises(CheckoutCreationFailed):
            checkout_service.start_product_checkout(db_session, GUILD_ID, BUYER_ID, product, "one_time")
        assert db_session.query(Purchase).count() == 0

    def test_archived_product(self, db_session, product):
        catalog_service.archive_product(db_session, GUILD_ID, product.id)
        db_session.refresh(product)
        with pytest.raises(PlanUnavailable):
            checkout_service.start_product_checkout(db_session, GUILD_ID, BUYER_ID, product, "one_time")


@pytest.mark.critical
class TestTicketAndUpgradeCheckout:
    def test_only_ticket_owner_gets_link(self, db_session, platform, product):
        handle = ticket_service.open_purchase_ticket(db_session, platform, GUILD_ID, BUYER_ID, product.id, "REF-T")
        stranger = ActorContext(user_id=OTHER_ID, is_admin=True)
        with pytest.raises(NotAuthorized):
            checkout_service.start_ticket_checkout(db_session, GUILD_ID, handle.channel_id, stranger, product.id, "one_time")

        owner = ActorContext(user_id=BUYER_ID)
        result = checkout_service.start_ticket_checkout(db_session, GUILD_ID, handle.channel_id, owner, product.id, "one_time")
        purchase = db_session.query(Purchase).filter(Purchase.purchase_id == result.purchase_id).one()
        assert purchase.reference_code == "REF-T"

    def test_support_ticket_is_not_a_checkout_channel(self, db_session, platform, product):
        handle = ticket_service.open_support_ticket(db_session, platform, GUILD_ID, BUYER_ID)
        with pytest.raises(TicketNotOpen):
            checkout_service.start_ticket_checkout(
                db_session, GUILD_ID, handle.channel_id, ActorContext(user_id=BUYER_ID), product.id, "one_time"
            )

    def test_upgrade_requires_ownership(self, db_session, product):
        with pytest.raises(PreconditionFailed):
            checkout_service.start_upgrade_checkout(db_session, GUILD_ID, BUYER_ID, product.id, "monthly")

    def test_upgrade_charges_full_plan_price(self, db_session, product, mock_stripe):
        own(db_session, product, "one_time")
        result = checkout_service.start_upgrade_checkout(db_session, GUILD_ID, BUYER_ID, product.id, "monthly")
        assert result.amount_minor == 499
        params = mock_stripe.checkout.Session.create.call_args.kwargs
        assert params["metadata"]["upgrade"] == "true"
        assert params["mode"] == "subscription"


@pytest.mark.high
class TestDonationCheckout:
    def test_minimum_donation(self, db_session, mock_stripe):
        with pytest.raises(AmountTooSmall, match="£1.00"):
            checkout_service.start_donation_checkout(db_session, GUILD_ID, BUYER_ID, 99)
        mock_stripe.checkout.Session.create.assert_not_called()

    def test_donation_checkout(self, db_session, mock_stripe):
        result = checkout_service.start_donation_checkout(db_session, GUILD_ID, BUYER_ID, 500)
        params = mock_stripe.checkout.Session.create.call_args.kwargs
        assert params["mode"] == "payment"
        assert params["metadata"]["type"] == "donation"
        purchase = db_session.query(Purchase).filter(Purchase.purchase_id == result.purchase_id).one()
        assert purchase.kind == "donation"
        assert purchase.product_id is None
