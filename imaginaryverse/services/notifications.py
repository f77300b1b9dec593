from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

# event -> (title, body, action); body may reference {plan}
EVENTS: dict[str, tuple[str, str, str]] = {
    "new": ("Subscription activated", "Welcome to {plan}! Your credits are ready.", "subscription_activated"),
    "trial_started": ("Free trial started", "Your {plan} trial is active. Enjoy!", "trial_started"),
    "upgraded": ("Plan upgraded", "You are now on {plan}. Unused credits were carried over.", "plan_upgraded"),
    "cancelled": ("Subscription cancelled", "Your {plan} subscription was cancelled. You are on the Free plan now.", "subscription_cancelled"),
    "pending_cancellation": (
        "Cancellation scheduled",
        "{plan} stays active until the end of the current period.",
        "pending_cancellation",
    ),
    "renewal_reminder": ("Renewal coming up", "Your {plan} subscription renews in a few days.", "renewal_reminder"),
    "renewed": ("Subscription renewed", "Your {plan} subscription was renewed and credits refreshed.", "subscription_renewed"),
    "payment_failed": ("Payment failed", "We could not renew {plan}. You were moved to the Free plan.", "payment_failed"),
    "expired": ("Subscription expired", "Your {plan} subscription has expired.", "subscription_expired"),
    "trial_expired": ("Trial ended", "Your free trial has ended. Upgrade to keep creating.", "subscription_expired"),
    "grace_period_ended": (
        "Grace period ended",
        "Your {plan} access has ended. You are on the Free plan now.",
        "subscription_expired",
    ),
    "credits_exhausted": ("Out of credits", "You have used all your {plan} credits.", "credits_exhausted"),
}


class NotificationSender(Protocol):
    def send_custom_notification(self, recipient_id: str, actor_id: str, payload: dict) -> None:
        ...


class DeviceTokenLookup(Protocol):
    def get_device_tokens(self, user_id: str) -> list[str]:
        ...


class LoggingNotificationSender:
    """Default sender; push delivery is wired in by the hosting app."""

    def send_custom_notification(self, recipient_id: str, actor_id: str, payload: dict) -> None:
        logger.info("notification to %s: %s", recipient_id, payload.get("action"))


def build_payload(event: str, *, plan_name: str | None = None, data: dict | None = None) -> dict:
    title, body, action = EVENTS[event]
    return {
        "title": title,
        "body": body.format(plan=plan_name or "your plan"),
        "type": "subscription",
        "action": action,
        "data": {"event": event, **(data or {})},
    }


class SubscriptionNotifier:
    def __init__(self, sender: NotificationSender | None = None, tokens: DeviceTokenLookup | None = None):
        self.sender = sender or LoggingNotificationSender()
        self.tokens = tokens

    def notify(self, user_id, event: str, *, plan_name: str | None = None, data: dict | None = None) -> bool:
        """Fire and forget. Returns False when the user has no device or delivery failed."""
        recipient = str(user_id)
        try:
            if self.tokens is not None and not self.tokens.get_device_tokens(recipient):
                logger.debug("no device tokens for %s, skipping %s", recipient, event)
                return False
            self.sender.send_custom_notification(recipient, SYSTEM_ACTOR, build_payload(event, plan_name=plan_name, data=data))
        except Exception:
            logger.exception("notification %s for user %s failed", event, recipient)
            return False
        return True
