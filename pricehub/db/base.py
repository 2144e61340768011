# Import every model so Base.metadata is complete for Alembic and create_all
from pricehub.db.base_class import Base  # noqa: F401
from pricehub.models.audit import AuditLog  # noqa: F401
from pricehub.models.catalog import PriceVersion, Product  # noqa: F401
from pricehub.models.outbox import DeadLetterEvent, OutboxEvent  # noqa: F401
from pricehub.models.price_change import IdempotencyKey, PriceChange  # noqa: F401
from pricehub.models.rule import PricingRule, RuleRun, RuleTarget  # noqa: F401
