from app.models.audit_log import AuditLog, AuditLogAction
from app.models.item_share import ItemShare
from app.models.organization import Organization
from app.models.plan import BillingCycle, Plan
from app.models.subscription import Subscription, SubscriptionState
from app.models.user import User, UserRole, UserStatus
from app.models.vault_item import VaultItem, VaultItemType
from app.models.webhook_event import WebhookEvent, WebhookProvider

__all__ = [
    "AuditLog",
    "AuditLogAction",
    "BillingCycle",
    "ItemShare",
    "Organization",
    "Plan",
    "Subscription",
    "SubscriptionState",
    "User",
    "UserRole",
    "UserStatus",
    "VaultItem",
    "VaultItemType",
    "WebhookEvent",
    "WebhookProvider",
]
