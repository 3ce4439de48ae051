"""Stripe checkout, customer portal and subscription webhooks."""

import logging
from datetime import datetime
from typing import Any, Optional

import stripe

from models import SubscriptionTier
from services.subscription import BILLING_PERIOD, get_tier_limits
from storage import StoryStore

logger = logging.getLogger("novelworld.billing")

METADATA_USER_KEY = "user_id"
ACTIVE_STATUSES = {"active", "trialing"}


class BillingError(Exception):
    """Stripe is unconfigured or rejected a call."""


class WebhookSignatureError(BillingError):
    pass


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


class BillingService:
    def __init__(
        self,
        store: StoryStore,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        monthly_price_id: Optional[str],
        annual_price_id: Optional[str],
        app_url: str,
    ):
        self.store = store
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.monthly_price_id = monthly_price_id
        self.annual_price_id = annual_price_id
        self.app_url = app_url.rstrip("/")

    def _require_key(self) -> str:
        if not self.secret_key:
            raise BillingError("Stripe is not configured")
        return self.secret_key

    def _billing_url(self, query: str = "") -> str:
        return f"{self.app_url}/dashboard/settings/billing{query}"

    def _ensure_customer(self, user_id: str, email: Optional[str]) -> str:
        profile = self.store.ensure_profile(user_id, email)
        if profile.stripe_customer_id:
            return profile.stripe_customer_id
        customer = stripe.Customer.create(
            api_key=self._require_key(),
            email=email or profile.email,
            metadata={METADATA_USER_KEY: user_id},
        )
        customer_id = _field(customer, "id")
        self.store.update_profile(user_id, stripe_customer_id=customer_id)
        logger.info("stripe customer created user_id=%s customer=%s", user_id, customer_id)
        return customer_id

    def create_checkout_session(self, user_id: str, email: Optional[str], billing_cycle: str = "monthly") -> str:
        cycle = "annual" if billing_cycle == "annual" else "monthly"
        price_id = self.annual_price_id if cycle == "annual" else self.monthly_price_id
        if not price_id:
            raise BillingError(f"No Stripe price configured for {cycle} billing")
        try:
            customer_id = self._ensure_customer(user_id, email)
            session = stripe.checkout.Session.create(
                api_key=self._require_key(),
                customer=customer_id,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=self._billing_url("?success=true"),
                cancel_url=self._billing_url("?canceled=true"),
                subscription_data={"metadata": {METADATA_USER_KEY: user_id, "billing_cycle": cycle}},
            )
        except stripe.StripeError as exc:
            logger.exception("stripe checkout failed user_id=%s", user_id)
            raise BillingError("Failed to create checkout session") from exc
        logger.info("stripe checkout created user_id=%s cycle=%s", user_id, cycle)
        return _field(session, "url")

    def create_portal_session(self, user_id: str) -> Optional[str]:
        """Return the portal URL, or None when the user has no Stripe customer yet."""
        profile = self.store.get_profile(user_id)
        if profile is None or not profile.stripe_customer_id:
            return None
        try:
            session = stripe.billing_portal.Session.create(
                api_key=self._require_key(),
                customer=profile.stripe_customer_id,
                return_url=self._billing_url(),
            )
        except stripe.StripeError as exc:
            logger.exception("stripe portal failed user_id=%s", user_id)
            raise BillingError("Failed to create portal session") from exc
        return _field(session, "url")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        if not signature:
            raise WebhookSignatureError("Missing stripe-signature header")
        if not self.webhook_secret:
            raise BillingError("Stripe webhook secret is not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("stripe webhook signature rejected error=%s", exc)
            raise WebhookSignatureError("Invalid signature") from exc

    def _subscription_user(self, subscription_id: Optional[str]) -> Optional[str]:
        if not subscription_id:
            return None
        subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._require_key())
        return _field(_field(subscription, "metadata"), METADATA_USER_KEY)

    def _start_period(self, user_id: str, **changes: Any) -> None:
        now = datetime.now()
        self.store.update_profile(
            user_id,
            words_used_this_month=0,
            billing_period_start=now,
            billing_period_end=now + BILLING_PERIOD,
            **changes,
        )

    def handle_event(self, event: Any) -> bool:
        """Apply one verified event to the profile it names. Returns whether it was handled."""
        event_type = _field(event, "type")
        obj = _field(_field(event, "data"), "object")

        if event_type == "checkout.session.completed":
            user_id = self._subscription_user(_field(obj, "subscription")) or _field(
                _field(obj, "metadata"), METADATA_USER_KEY
            )
            if user_id:
                self._start_period(
                    user_id,
                    subscription_tier=SubscriptionTier.PRO,
                    stripe_customer_id=_field(obj, "customer"),
                    words_quota=get_tier_limits(SubscriptionTier.PRO).monthly_word_quota,
                )
                logger.info("subscription started user_id=%s", user_id)
            return True

        if event_type == "customer.subscription.updated":
            user_id = _field(_field(obj, "metadata"), METADATA_USER_KEY)
            if user_id:
                tier = SubscriptionTier.PRO if _field(obj, "status") in ACTIVE_STATUSES else SubscriptionTier.FREE
                self.store.update_profile(
                    user_id,
                    subscription_tier=tier,
                    words_quota=get_tier_limits(tier).monthly_word_quota,
                )
                logger.info("subscription updated user_id=%s tier=%s", user_id, tier.value)
            return True

        if event_type == "customer.subscription.deleted":
            user_id = _field(_field(obj, "metadata"), METADATA_USER_KEY)
            if user_id:
                self.store.update_profile(
                    user_id,
                    subscription_tier=SubscriptionTier.FREE,
                    words_quota=get_tier_limits(SubscriptionTier.FREE).monthly_word_quota,
                )
                logger.info("subscription cancelled user_id=%s", user_id)
            return True

        if event_type == "invoice.payment_succeeded":
            user_id = self._subscription_user(_field(obj, "subscription"))
            if user_id:
                self._start_period(user_id)
                logger.info("word usage reset user_id=%s", user_id)
            return True

        logger.info("stripe webhook ignored type=%s", event_type)
        return False
