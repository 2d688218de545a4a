# Models package — import all models here so Alembic can discover them.

from app.models.user import User, Profile, UserRole  # noqa: F401
from app.models.plan import Plan  # noqa: F401
from app.models.company import Company, CompanyUser  # noqa: F401
from app.models.subscription import Subscription  # noqa: F401
from app.models.checkout import SubscriptionCheckout  # noqa: F401
from app.models.webhook_event import WebhookEvent  # noqa: F401
from app.models.audit import AuditEvent  # noqa: F401
