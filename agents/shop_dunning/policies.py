"""Business policies for dunning stage determination.

Implements the deterministic stage state machine and the order
predicates the orchestrator applies before it.
"""

from .config import TenantConfig
from .dto import DunningStage, Order, OrderDocument, StageMarkers

SECONDS_PER_DAY = 24 * 60 * 60


def decide(
    markers: StageMarkers, ignore_flag: bool, due_days: int, now: int
) -> DunningStage:
    """Determine the next dunning stage for an order.

    Rules are evaluated in order, first match wins:
    ignored orders get nothing, an unsent first notice is always due,
    later stages require the previous marker to be at least `due_days`
    old and their own marker to be unset.

    Args:
        markers: Sent-at markers of the order
        ignore_flag: Order is excluded from dunning
        due_days: Days between two stages (>= 1)
        now: Current time in epoch seconds

    Returns:
        Stage to send now, or DunningStage.NONE

    Raises:
        ValueError: If due_days is smaller than 1
    """
    if due_days < 1:
        raise ValueError(f"due_days must be >= 1, got {due_days}")

    if ignore_flag:
        return DunningStage.NONE

    if not markers.is_set(DunningStage.STAGE_1):
        return DunningStage.STAGE_1

    due_seconds = due_days * SECONDS_PER_DAY
    for stage in (DunningStage.STAGE_2, DunningStage.STAGE_3):
        previous_sent = markers.get(stage.previous)
        if (
            previous_sent is not None
            and not markers.is_set(stage)
            and now - previous_sent >= due_seconds
        ):
            return stage

    return DunningStage.NONE


def find_invoice(order: Order) -> OrderDocument | None:
    """Return the first invoice-typed document of the order."""
    for document in order.documents:
        if document.is_invoice:
            return document
    return None


def is_paid(order: Order) -> bool:
    """Check whether any transaction is paid or partially paid."""
    return any(transaction.is_paid for transaction in order.transactions)


def is_ignored(order: Order, ignore_tag: str) -> bool:
    return ignore_tag in order.tags


class DunningPolicies:
    """Dunning rules bound to one tenant.

    All methods are pure functions of their arguments and the tenant
    configuration.
    """

    def __init__(
        self,
        tenant: TenantConfig,
        marker_prefix: str,
        ignore_tag: str,
        legacy_tag_markers: bool = True,
    ):
        """Initialize with tenant configuration.

        Args:
            tenant: Tenant configuration
            marker_prefix: Prefix of the sent-at custom fields
            ignore_tag: Tag that excludes an order from dunning
            legacy_tag_markers: Honour stage tags without a timestamp
        """
        self.tenant = tenant
        self.marker_prefix = marker_prefix
        self.ignore_tag = ignore_tag
        self.legacy_tag_markers = legacy_tag_markers

    def markers_for(self, order: Order) -> StageMarkers:
        return StageMarkers.from_order(order, self.marker_prefix, self.legacy_tag_markers)

    def next_stage(self, order: Order, now: int) -> DunningStage:
        """Determine the stage due for the order at `now`."""
        return decide(
            self.markers_for(order),
            is_ignored(order, self.ignore_tag),
            self.tenant.due_days,
            now,
        )
