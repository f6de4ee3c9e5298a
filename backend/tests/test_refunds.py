"""Refund approval workflow tests"""
from datetime import timedelta
from unittest.mock import patch

import pytest
import stripe as real_stripe

from storefront.core.config import settings
from storefront.core.errors import (
    ChatPlatformError,
    NotAuthorized,
    NotFound,
    PreconditionFailed,
    PurchaseNotRefundable,
    RefundWindowExpired,
    RequestAlreadyDecided,
)
from storefront.models.refund_request import RefundRequest
from storefront.schemas.commands import ActorContext
from storefront.services import entitlement_service, refund_service
from storefront.utils.dates import as_utc

from conftest import ADMIN_ID, BUYER_ID, GUILD_ID, NOW

ADMIN = ActorContext(user_id=ADMIN_ID, is_admin=True)
MEMBER = ActorContext(user_id=BUYER_ID, is_admin=False)


def file_request(db_session, platform, purchase, hours_after_payment=1):
    return refund_service.request_refund(
        db_session, platform, GUILD_ID, ADMIN, purchase.purchase_id,
        now=NOW + timedelta(hours=hours_after_payment),
    )


def prompt_buttons(platform, request):
    for message in platform.messages:
        if message["message_id"] == request.message_id:
            return [b["custom_id"] for row in message["payload"].get("components", []) for b in row["components"]]
    raise AssertionError("approval prompt not found")


@pytest.fixture
def paid(db_session, platform, product, make_purchase):
    """A paid one-time purchase with its entitlement and role"""
    purchase = make_purchase(product, plan_key="one_time")
    entitlement_service.upsert_on_paid(
        db_session, GUILD_ID, BUYER_ID, product.id, "one_time",
        source_purchase_id=purchase.purchase_id, now=NOW,
    )
    platform.roles.add((GUILD_ID, BUYER_ID, product.role_id))
    return purchase


@pytest.mark.critical
class TestRequestRefund:
    """Filing a refund request"""

    def test_request_posts_prompt_with_buttons(self, db_session, platform, paid):
        request = file_request(db_session, platform, paid)

        assert request.status == "pending"
        assert request.requested_by == ADMIN_ID
        assert request.message_channel_id == platform.channel_named("purchase-log")
        assert prompt_buttons(platform, request) == [
            f"refund_approve:{request.request_id}",
            f"refund_reject:{request.request_id}",
        ]

    def test_requires_admin(self, db_session, platform, paid):
        with pytest.raises(NotAuthorized):
            refund_service.request_refund(db_session, platform, GUILD_ID, MEMBER, paid.purchase_id, now=NOW)

    def test_unknown_purchase(self, db_session, platform):
        with pytest.raises(NotFound):
            refund_service.request_refund(db_session, platform, GUILD_ID, ADMIN, "VT-NOPE", now=NOW)

    def test_unpaid_purchase(self, db_session, platform, product, make_purchase):
        purchase = make_purchase(product, status="created")
        with pytest.raises(PurchaseNotRefundable, match="`created`"):
            file_request(db_session, platform, purchase)

    def test_window_expired_at_request_time(self, db_session, platform, paid):
        with pytest.raises(RefundWindowExpired):
            file_request(db_session, platform, paid, hours_after_payment=settings.REFUND_WINDOW_HOURS + 1)
        assert db_session.query(RefundRequest).count() == 0

    def test_one_open_request_per_purchase(self, db_session, platform, paid):
        first = file_request(db_session, platform, paid)
        with pytest.raises(PreconditionFailed, match=first.request_id):
            file_request(db_session, platform, paid, hours_after_payment=2)

    def test_new_request_allowed_after_rejection(self, db_session, platform, paid):
        first = file_request(db_session, platform, paid)
        refund_service.decide_refund(db_session, platform, GUILD_ID, first.request_id, ADMIN, approve=False, now=NOW)
        second = file_request(db_session, platform, paid, hours_after_payment=2)
        assert second.request_id != first.request_id

    def test_prompt_post_failure_marks_request_failed(self, db_session, platform, paid):
        platform.fail.add("send_message")
        with pytest.raises(ChatPlatformError):
            file_request(db_session, platform, paid)
        request = db_session.query(RefundRequest).one()
        assert request.status == "failed"


@pytest.mark.critical
class TestDecideRefund:
    """Approval executes through Stripe; every outcome is re-rendered"""

    def test_approve_executes_and_unwinds_access(self, db_session, platform, product, paid, mock_stripe):
        request = file_request(db_session, platform, paid)
        approved_at = NOW + timedelta(hours=2)

        request = refund_service.decide_refund(
            db_session, platform, GUILD_ID, request.request_id, ADMIN, approve=True, now=approved_at
        )

        mock_stripe.Refund.create.assert_called_once_with(payment_intent="pi_test_1")
        assert request.status == "executed"
        assert request.stripe_refund_id == "re_test_1"
        assert request.approved_by == ADMIN_ID
        db_session.refresh(paid)
        assert paid.status == "refunded"
        assert paid.stripe_refund_id == "re_test_1"
        assert as_utc(paid.refunded_at) == approved_at

        entitlement = entitlement_service.get_entitlement(db_session, GUILD_ID, BUYER_ID, product.id)
        assert entitlement.status == "revoked"
        assert (GUILD_ID, BUYER_ID, product.role_id) not in platform.roles
        assert prompt_buttons(platform, request) == []

    def test_reject(self, db_session, platform, paid, mock_stripe):
        request = file_request(db_session, platform, paid)
        request = refund_service.decide_refund(db_session, platform, GUILD_ID, request.request_id, ADMIN, approve=False, now=NOW)

        assert request.status == "rejected"
        assert request.rejected_by == ADMIN_ID
        mock_stripe.Refund.create.assert_not_called()
        db_session.refresh(paid)
        assert paid.status == "paid"

    def test_window_rechecked_at_approval(self, db_session, platform, paid, mock_stripe):
        """Filed at hour 23, approved at hour 25: nothing is refunded"""
        request = file_request(db_session, platform, paid, hours_after_payment=23)

        request = refund_service.decide_refund(
            db_session, platform, GUILD_ID, request.request_id, ADMIN, approve=True,
            now=NOW + timedelta(hours=25),
        )

        assert request.status == "failed"
        assert request.failure_reason == "Refund window expired"
        mock_stripe.Refund.create.assert_not_called()
        db_session.refresh(paid)
        assert paid.status == "paid"

    def test_stripe_failure_keeps_purchase_paid(self, db_session, platform, product, paid, mock_stripe):
        mock_stripe.Refund.create.side_effect = real_stripe.StripeError("Charge already refunded")
        request = file_request(db_session, platform, paid)

        request = refund_service.decide_refund(db_session, platform, GUILD_ID, request.request_id, ADMIN, approve=True, now=NOW)

        assert request.status == "failed"
        assert "Charge already refunded" in request.failure_reason
        db_session.refresh(paid)
        assert paid.status == "paid"
        assert (GUILD_ID, BUYER_ID, product.role_id) in platform.roles
        embed = platform.messages[-1]["payload"]["embeds"][0]
        assert "failed" in str(embed)

    def test_decided_exactly_once(self, db_session, platform, paid, mock_stripe):
        request = file_request(db_session, platform, paid)
        refund_service.decide_refund(db_session, platform, GUILD_ID, request.request_id, ADMIN, approve=True, now=NOW)

        with pytest.raises(RequestAlreadyDecided, match="executed"):
            refund_service.decide_refund(db_session, platform, GUILD_ID, request.request_id, ADMIN, approve=False, now=NOW)
        assert mock_stripe.Refund.create.call_count == 1

    def test_non_admin_cannot_decide(self, db_session, platform, paid):
        request = file_request(db_session, platform, paid)
        with pytest.raises(NotAuthorized):
            refund_service.decide_refund(db_session, platform, GUILD_ID, request.request_id, MEMBER, approve=True, now=NOW)

    def test_configured_approver_only(self, db_session, platform, paid):
        request = file_request(db_session, platform, paid)
        with patch.object(settings, "REFUND_APPROVER_USER_ID", "42"):
            with pytest.raises(NotAuthorized):
                refund_service.decide_refund(db_session, platform, GUILD_ID, request.request_id, ADMIN, approve=True, now=NOW)
            approver = ActorContext(user_id="42", is_admin=False)
            request = refund_service.decide_refund(db_session, platform, GUILD_ID, request.request_id, approver, approve=False, now=NOW)
        assert request.status == "rejected"

    def test_subscription_refund_cancels_and_keeps_one_time_access(self, db_session, platform, product, paid, make_purchase, mock_stripe):
        subscription = make_purchase(product, plan_key="monthly", subscription_id="sub_test_1", payment_intent_id=None)
        entitlement_service.upsert_on_paid(
            db_session, GUILD_ID, BUYER_ID, product.id, "monthly",
            subscription_id="sub_test_1", source_purchase_id=subscription.purchase_id, now=NOW,
        )
        mock_stripe.Subscription.retrieve.return_value = {
            "id": "sub_test_1",
            "latest_invoice": {"payment_intent": {"id": "pi_sub_1"}},
        }
        request = file_request(db_session, platform, subscription)

        refund_service.decide_refund(db_session, platform, GUILD_ID, request.request_id, ADMIN, approve=True, now=NOW)

        mock_stripe.Refund.create.assert_called_once_with(payment_intent="pi_sub_1")
        mock_stripe.Subscription.cancel.assert_called_once_with("sub_test_1")
        db_session.refresh(subscription)
        assert subscription.status == "refunded"
        assert subscription.subscription_status == "canceled"

        entitlement = entitlement_service.get_entitlement(db_session, GUILD_ID, BUYER_ID, product.id)
        assert entitlement.status == "active"
        assert entitlement.plan_key == "one_time"
        assert (GUILD_ID, BUYER_ID, product.role_id) in platform.roles

    def test_refunding_one_time_after_upgrade_keeps_subscriber_role(self, db_session, platform, product, paid, make_purchase, mock_stripe):
        upgrade = make_purchase(product, plan_key="monthly", subscription_id="sub_test_1", payment_intent_id=None)
        entitlement_service.upsert_on_paid(
            db_session, GUILD_ID, BUYER_ID, product.id, "monthly",
            subscription_id="sub_test_1", source_purchase_id=upgrade.purchase_id, now=NOW,
        )
        request = file_request(db_session, platform, paid)

        refund_service.decide_refund(db_session, platform, GUILD_ID, request.request_id, ADMIN, approve=True, now=NOW)

        mock_stripe.Refund.create.assert_called_once_with(payment_intent="pi_test_1")
        db_session.refresh(paid)
        assert paid.status == "refunded"
        entitlement = entitlement_service.get_entitlement(db_session, GUILD_ID, BUYER_ID, product.id)
        assert entitlement.status == "active"
        assert entitlement.plan_key == "monthly"
        assert (GUILD_ID, BUYER_ID, product.role_id) in platform.roles
