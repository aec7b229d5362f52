"""Shop Dunning Agent - payment reminders for Shopware orders.

Polls each configured shop for orders in payment state 'reminded',
determines the due dunning stage and sends the matching notice with
the invoice attached via Brevo.

Key Components:
- Config: Validated per-shop settings loaded from JSON or YAML
- Policies: Stage decision and order predicates
- DTOs: Orders, stage markers and cycle results
- Clients: Shopware Admin API
- Mailer / Templates: Notice composition with Jinja2
- Playbooks: Per-shop, per-order orchestration
"""

__version__ = "1.0.0"

from .clients import ShopwareClient
from .config import TenantConfig, load_tenants
from .dto import (
    STAGE_SPECS,
    CycleResult,
    DunningStage,
    Order,
    OrderOutcome,
    StageMarkers,
    TenantResult,
)
from .errors import (
    ApiRequestError,
    AuthenticationError,
    ConfigurationError,
    DeliveryError,
    DunningError,
    MissingFieldError,
    NotFoundError,
    TemplateMissingError,
)
from .mailer import DunningMailer
from .playbooks import DunningPlaybook
from .policies import DunningPolicies, decide

__all__ = [
    "ApiRequestError",
    "AuthenticationError",
    "ConfigurationError",
    "CycleResult",
    "DeliveryError",
    "DunningError",
    "DunningMailer",
    "DunningPlaybook",
    "DunningPolicies",
    "DunningStage",
    "MissingFieldError",
    "NotFoundError",
    "Order",
    "OrderOutcome",
    "STAGE_SPECS",
    "ShopwareClient",
    "StageMarkers",
    "TemplateMissingError",
    "TenantConfig",
    "TenantResult",
    "decide",
    "load_tenants",
]
