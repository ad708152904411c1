"""Import all models so SQLAlchemy metadata is fully populated."""

from app.models.audit_log import AuditLog  # noqa: F401
from app.models.item_share import ItemShare  # noqa: F401
from app.models.organization import Organization  # noqa: F401
from app.models.plan import Plan  # noqa: F401
from app.models.subscription import Subscription  # noqa: F401
from app.models.user import User  # noqa: F401
from app.models.vault_item import VaultItem  # noqa: F401
from app.models.webhook_event import WebhookEvent  # noqa: F401
