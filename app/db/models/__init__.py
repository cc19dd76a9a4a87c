"""Re-export all models so Base.metadata sees them."""

from app.db.models.profile import Profile
from app.db.models.subscription import Subscription
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "Profile",
    "Subscription",
    "WebhookEvent",
]
