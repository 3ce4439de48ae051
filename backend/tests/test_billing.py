import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import stripe

from models import SubscriptionTier
from services.billing import BillingError, BillingService, WebhookSignatureError
from storage import StoryStore


def _make_store() -> StoryStore:
    tmp = tempfile.mkdtemp()
    return StoryStore(str(Path(tmp) / "test.db"))


def _service(store: StoryStore, **overrides) -> BillingService:
    options = dict(
        secret_key="sk_test_123",
        webhook_secret="whsec_123",
        monthly_price_id="price_monthly",
        annual_price_id="price_annual",
        app_url="https://app.example.com/",
    )
    options.update(overrides)
    return BillingService(store, **options)


def _event(event_type: str, obj: dict) -> dict:
    return {"type": event_type, "data": {"object": obj}}


class TestCheckout(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()
        self.service = _service(self.store)

    def test_creates_customer_once(self):
        with patch("stripe.Customer.create", return_value={"id": "cus_1"}) as create_customer, patch(
            "stripe.checkout.Session.create", return_value={"url": "https://checkout"}
        ) as create_session:
            url = self.service.create_checkout_session("u1", "a@example.com", "annual")
            self.service.create_checkout_session("u1", "a@example.com", "monthly")

        self.assertEqual(url, "https://checkout")
        create_customer.assert_called_once()
        self.assertEqual(self.store.get_profile("u1").stripe_customer_id, "cus_1")
        first = create_session.call_args_list[0].kwargs
        self.assertEqual(first["line_items"], [{"price": "price_annual", "quantity": 1}])
        self.assertEqual(first["success_url"], "https://app.example.com/dashboard/settings/billing?success=true")
        self.assertEqual(first["subscription_data"]["metadata"], {"user_id": "u1", "billing_cycle": "annual"})
        self.assertEqual(create_session.call_args_list[1].kwargs["line_items"][0]["price"], "price_monthly")

    def test_stripe_failure_becomes_billing_error(self):
        self.store.update_profile("u1", stripe_customer_id="cus_1")
        with patch("stripe.checkout.Session.create", side_effect=stripe.StripeError("card declined")):
            with self.assertRaises(BillingError):
                self.service.create_checkout_session("u1", None)

    def test_missing_price(self):
        with self.assertRaises(BillingError):
            _service(self.store, annual_price_id=None).create_checkout_session("u1", None, "annual")

    def test_portal_without_customer(self):
        self.assertIsNone(self.service.create_portal_session("u1"))
        self.store.update_profile("u1", stripe_customer_id="cus_1")
        with patch("stripe.billing_portal.Session.create", return_value={"url": "https://portal"}) as create:
            self.assertEqual(self.service.create_portal_session("u1"), "https://portal")
        self.assertEqual(create.call_args.kwargs["return_url"], "https://app.example.com/dashboard/settings/billing")


class TestWebhooks(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()
        self.store.ensure_profile("u1")
        self.service = _service(self.store)

    def test_signature_checks(self):
        with self.assertRaises(WebhookSignatureError):
            self.service.construct_event(b"{}", None)
        with patch(
            "stripe.Webhook.construct_event",
            side_effect=stripe.SignatureVerificationError("bad", "sig"),
        ):
            with self.assertRaises(WebhookSignatureError):
                self.service.construct_event(b"{}", "t=1,v1=abc")
        with self.assertRaises(BillingError):
            _service(self.store, webhook_secret=None).construct_event(b"{}", "t=1,v1=abc")

    def test_checkout_completed_upgrades(self):
        subscription = {"metadata": {"user_id": "u1"}}
        with patch("stripe.Subscription.retrieve", return_value=subscription):
            handled = self.service.handle_event(
                _event("checkout.session.completed", {"subscription": "sub_1", "customer": "cus_9"})
            )
        self.assertTrue(handled)
        profile = self.store.get_profile("u1")
        self.assertEqual(profile.subscription_tier, SubscriptionTier.PRO)
        self.assertEqual(profile.stripe_customer_id, "cus_9")
        self.assertEqual(profile.words_quota, 150_000)
        self.assertEqual(profile.words_used_this_month, 0)
        self.assertGreater(profile.billing_period_end, datetime.now())

    def test_subscription_updated_follows_status(self):
        self.store.update_profile("u1", subscription_tier=SubscriptionTier.PRO, words_quota=150_000)
        self.service.handle_event(
            _event("customer.subscription.updated", {"status": "past_due", "metadata": {"user_id": "u1"}})
        )
        profile = self.store.get_profile("u1")
        self.assertEqual(profile.subscription_tier, SubscriptionTier.FREE)
        self.assertEqual(profile.words_quota, 10_000)

        self.service.handle_event(
            _event("customer.subscription.updated", {"status": "trialing", "metadata": {"user_id": "u1"}})
        )
        self.assertEqual(self.store.get_profile("u1").subscription_tier, SubscriptionTier.PRO)

    def test_subscription_deleted_downgrades(self):
        self.store.update_profile("u1", subscription_tier=SubscriptionTier.PRO)
        self.service.handle_event(_event("customer.subscription.deleted", {"metadata": {"user_id": "u1"}}))
        self.assertEqual(self.store.get_profile("u1").subscription_tier, SubscriptionTier.FREE)

    def test_invoice_paid_resets_usage(self):
        self.store.update_profile("u1", words_used_this_month=4321)
        subscription = MagicMock(metadata={"user_id": "u1"})
        with patch("stripe.Subscription.retrieve", return_value=subscription) as retrieve:
            self.service.handle_event(_event("invoice.payment_succeeded", {"subscription": "sub_1"}))
        retrieve.assert_called_once_with("sub_1", api_key="sk_test_123")
        self.assertEqual(self.store.get_profile("u1").words_used_this_month, 0)

    def test_other_events_ignored(self):
        self.assertFalse(self.service.handle_event(_event("charge.refunded", {})))


if __name__ == "__main__":
    unittest.main()
