"""Data Transfer Objects for the shop dunning agent.

Provides typed structures for orders read from the shop backend,
the dunning stage model and processing results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum, IntEnum
from typing import Any, Mapping

PAID_STATES = frozenset({"paid", "partially_paid"})
INVOICE_DOCUMENT_TYPE = "invoice"


class DunningStage(IntEnum):
    """Dunning stage enumeration, ordered from no action to final letter."""

    NONE = 0
    STAGE_1 = 1
    STAGE_2 = 2
    STAGE_3 = 3

    @property
    def previous(self) -> "DunningStage":
        """Stage whose marker gates this one (NONE for NONE and STAGE_1)."""
        return DunningStage(max(self.value - 1, 0))


@dataclass(frozen=True)
class StageSpec:
    """Static description of one dunning stage."""

    stage: DunningStage
    key: str
    label: str
    tag: str
    subject_template: str

    def marker_field(self, prefix: str) -> str:
        """Custom field holding the sent-at timestamp of this stage."""
        return f"{prefix}_{self.key}_sent_at"

    def subject(self, order_number: str) -> str:
        return self.subject_template.format(order_number=order_number)


STAGE_SPECS: dict[DunningStage, StageSpec] = {
    DunningStage.STAGE_1: StageSpec(
        stage=DunningStage.STAGE_1,
        key="ze",
        label="Zahlungserinnerung",
        tag="Billing: ZE",
        subject_template="Zahlungserinnerung für Bestellung {order_number}",
    ),
    DunningStage.STAGE_2: StageSpec(
        stage=DunningStage.STAGE_2,
        key="mahnung1",
        label="Mahnung 1",
        tag="Billing: Mahnung 1",
        subject_template="Erste Mahnung für Bestellung {order_number}",
    ),
    DunningStage.STAGE_3: StageSpec(
        stage=DunningStage.STAGE_3,
        key="mahnung2",
        label="Mahnung 2",
        tag="Billing: Mahnung 2",
        subject_template="Zweite Mahnung für Bestellung {order_number}",
    ),
}


def _parse_datetime(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_amount(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _technical_name(data: Mapping[str, Any] | None) -> str:
    if not isinstance(data, Mapping):
        return ""
    return str(data.get("technicalName") or "")


@dataclass(frozen=True)
class OrderDocument:
    """Document attached to an order (invoice, delivery note, ...)."""

    document_id: str
    document_type: str
    document_number: str | None = None
    deep_link_code: str | None = None

    @property
    def is_invoice(self) -> bool:
        return self.document_type == INVOICE_DOCUMENT_TYPE

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "OrderDocument":
        """Create from a Shopware document entity."""
        number = data.get("documentNumber")
        if not number:
            number = (data.get("config") or {}).get("documentNumber")
        return cls(
            document_id=str(data["id"]),
            document_type=_technical_name(data.get("documentType")),
            document_number=str(number) if number else None,
            deep_link_code=data.get("deepLinkCode"),
        )


@dataclass(frozen=True)
class OrderTransaction:
    """Payment transaction of an order."""

    transaction_id: str
    state: str

    @property
    def is_paid(self) -> bool:
        return self.state in PAID_STATES

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "OrderTransaction":
        return cls(
            transaction_id=str(data.get("id") or ""),
            state=_technical_name(data.get("stateMachineState")),
        )


@dataclass
class Order:
    """Order candidate for dunning as returned by the shop backend.

    Only `id` and `order_number` are mandatory when parsing. Fields needed
    to actually send a notice (customer email) are checked by the mailer.
    """

    order_id: str
    order_number: str
    customer_email: str | None = None
    first_name: str = ""
    last_name: str = ""
    order_date: datetime | None = None
    amount_total: Decimal = Decimal("0")
    customer_comment: str | None = None
    sales_channel_name: str | None = None
    documents: list[OrderDocument] = field(default_factory=list)
    transactions: list[OrderTransaction] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    custom_fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Order":
        """Create from a Shopware order entity.

        Args:
            data: Order entity with associations expanded

        Returns:
            Parsed order

        Raises:
            ValueError: If id or orderNumber is missing
        """
        order_id = data.get("id")
        order_number = data.get("orderNumber")
        if not order_id or not order_number:
            raise ValueError("Order entity without id or orderNumber")

        customer = data.get("orderCustomer") or {}
        billing = data.get("billingAddress") or {}
        sales_channel = data.get("salesChannel") or {}

        comment = data.get("customerComment") or customer.get("customerComment")

        return cls(
            order_id=str(order_id),
            order_number=str(order_number),
            customer_email=customer.get("email") or None,
            first_name=billing.get("firstName") or "",
            last_name=billing.get("lastName") or "",
            order_date=_parse_datetime(data.get("orderDateTime")),
            amount_total=_parse_amount(data.get("amountTotal")),
            customer_comment=comment or None,
            sales_channel_name=sales_channel.get("name") or None,
            documents=[OrderDocument.from_api(d) for d in data.get("documents") or []],
            transactions=[
                OrderTransaction.from_api(t) for t in data.get("transactions") or []
            ],
            tags=[t["name"] for t in data.get("tags") or [] if t.get("name")],
            custom_fields=dict(data.get("customFields") or {}),
        )


@dataclass(frozen=True)
class StageMarkers:
    """Sent-at timestamps (epoch seconds) per dunning stage.

    Markers only move forward: a set marker is never replaced or cleared.
    """

    sent_at: Mapping[DunningStage, int] = field(default_factory=dict)

    def get(self, stage: DunningStage) -> int | None:
        return self.sent_at.get(stage)

    def is_set(self, stage: DunningStage) -> bool:
        return stage in self.sent_at

    def with_marker(self, stage: DunningStage, timestamp: int) -> "StageMarkers":
        """Return a copy with `stage` marked as sent at `timestamp`.

        Raises:
            ValueError: If stage is NONE or its marker is already set
        """
        if stage is DunningStage.NONE:
            raise ValueError("Cannot set a marker for DunningStage.NONE")
        if self.is_set(stage):
            raise ValueError(f"Marker for {stage.name} already set")
        updated = dict(self.sent_at)
        updated[stage] = int(timestamp)
        return StageMarkers(updated)

    @classmethod
    def from_order(
        cls, order: Order, marker_prefix: str, legacy_tags: bool = True
    ) -> "StageMarkers":
        """Read markers from the order's custom fields.

        Args:
            order: Order to inspect
            marker_prefix: Prefix of the timestamp custom fields
            legacy_tags: Count a stage tag without timestamp as sent at epoch 0

        Returns:
            Marker set of the order
        """
        sent_at: dict[DunningStage, int] = {}
        for stage, spec in STAGE_SPECS.items():
            raw = order.custom_fields.get(spec.marker_field(marker_prefix))
            if isinstance(raw, (int, float)) and not isinstance(raw, bool) and raw > 0:
                sent_at[stage] = int(raw)
            elif isinstance(raw, str) and raw.isdigit() and int(raw) > 0:
                sent_at[stage] = int(raw)
            elif legacy_tags and spec.tag in order.tags:
                sent_at[stage] = 0
        return cls(sent_at)


class OrderOutcome(Enum):
    """What happened to a single order in a cycle."""

    NO_DOCUMENTS = "no_documents"
    MISSING_INVOICE = "missing_invoice"
    PAID = "paid"
    NO_ACTION = "no_action"
    SENT = "sent"
    DRY_RUN = "dry_run"
    FAILED = "failed"


@dataclass
class TenantResult:
    """Result of processing one tenant."""

    tenant: str
    outcomes: dict[OrderOutcome, int] = field(default_factory=dict)
    error: str | None = None
    cancelled: bool = False

    def record(self, outcome: OrderOutcome) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def count(self, outcome: OrderOutcome) -> int:
        return self.outcomes.get(outcome, 0)

    @property
    def orders_seen(self) -> int:
        return sum(self.outcomes.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant,
            "outcomes": {k.value: v for k, v in self.outcomes.items()},
            "error": self.error,
            "cancelled": self.cancelled,
        }


@dataclass
class CycleResult:
    """Result of one dunning cycle over all tenants."""

    cycle_id: str
    dry_run: bool = False
    tenants: list[TenantResult] = field(default_factory=list)
    cancelled: bool = False
    processing_time_seconds: float = 0.0

    def total(self, outcome: OrderOutcome) -> int:
        return sum(t.count(outcome) for t in self.tenants)

    @property
    def success(self) -> bool:
        return all(t.error is None for t in self.tenants)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "dry_run": self.dry_run,
            "tenants": [t.to_dict() for t in self.tenants],
            "cancelled": self.cancelled,
            "processing_time_seconds": self.processing_time_seconds,
        }
