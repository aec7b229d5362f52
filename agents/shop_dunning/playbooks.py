"""Dunning cycle orchestration.

Walks every configured tenant, pages through its reminded orders and
applies the stage decision to each one: download the invoice, render
and send the notice, then record the stage on the order. A failing
order never aborts its tenant and a failing tenant never aborts the
cycle.
"""

import logging
import re
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterable

from backend.core.config import settings
from backend.core.observability import generate_cycle_id, set_cycle_id, set_tenant
from backend.integrations.brevo_client import BrevoClient

from .clients import ShopwareClient
from .config import TenantConfig
from .dto import (
    STAGE_SPECS,
    CycleResult,
    DunningStage,
    Order,
    OrderDocument,
    OrderOutcome,
    StageSpec,
    TenantResult,
)
from .mailer import DunningMailer
from .policies import DunningPolicies, find_invoice, is_paid
from .templates import TemplateEngine

ClientFactory = Callable[[TenantConfig], ShopwareClient]
MailerFactory = Callable[[TenantConfig], DunningMailer]

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _path_component(value: str) -> str:
    return _UNSAFE_PATH_CHARS.sub("_", value).strip("._") or "unknown"


def default_client_factory(tenant: TenantConfig) -> ShopwareClient:
    return ShopwareClient(tenant)


def default_mailer_factory(template_engine: TemplateEngine) -> MailerFactory:
    """Build a factory creating one Brevo-backed mailer per tenant."""

    def factory(tenant: TenantConfig) -> DunningMailer:
        return DunningMailer(tenant, BrevoClient(tenant.brevo_api_key), template_engine)

    return factory


class DunningPlaybook:
    """Runs dunning cycles over a set of tenants."""

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        mailer_factory: MailerFactory | None = None,
        dry_run: bool = False,
        dry_run_dir: str | Path | None = None,
        page_size: int | None = None,
        order_delay_ms: int | None = None,
        tenant_delay_ms: int | None = None,
        marker_prefix: str | None = None,
        ignore_tag: str | None = None,
        legacy_tag_markers: bool | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize playbook.

        Args:
            client_factory: Creates the Shopware client of a tenant
            mailer_factory: Creates the mailer of a tenant
            dry_run: Render and save artifacts instead of sending and persisting
            dry_run_dir: Root directory for dry-run artifacts
            page_size: Orders per search page
            order_delay_ms: Pause between two orders
            tenant_delay_ms: Pause between two tenants
            marker_prefix: Prefix of the sent-at custom fields
            ignore_tag: Tag excluding an order from dunning
            legacy_tag_markers: Honour stage tags without a timestamp
            clock: Wall clock returning epoch seconds
            sleep: Sleep function used for the delays
        """
        self.client_factory = client_factory or default_client_factory
        self.mailer_factory = mailer_factory or default_mailer_factory(
            TemplateEngine(settings.DUNNING_TEMPLATES_DIR)
        )
        self.dry_run = dry_run
        self.dry_run_dir = Path(dry_run_dir or settings.DUNNING_DRY_RUN_DIR)
        self.page_size = page_size or settings.DUNNING_PAGE_SIZE
        self.order_delay = (
            order_delay_ms if order_delay_ms is not None else settings.DUNNING_ORDER_DELAY_MS
        ) / 1000.0
        self.tenant_delay = (
            tenant_delay_ms if tenant_delay_ms is not None else settings.DUNNING_TENANT_DELAY_MS
        ) / 1000.0
        self.marker_prefix = marker_prefix or settings.DUNNING_MARKER_PREFIX
        self.ignore_tag = ignore_tag or settings.DUNNING_IGNORE_TAG
        self.legacy_tag_markers = (
            settings.DUNNING_LEGACY_TAG_MARKERS
            if legacy_tag_markers is None
            else legacy_tag_markers
        )
        self._clock = clock
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

    def run_cycle(
        self, tenants: Iterable[TenantConfig], cancel: threading.Event | None = None
    ) -> CycleResult:
        """Process all tenants once.

        Args:
            tenants: Tenants to process, in order
            cancel: Event polled between orders and tenants

        Returns:
            Cycle result with per-tenant outcome counts
        """
        cancel = cancel or threading.Event()
        result = CycleResult(cycle_id=generate_cycle_id(), dry_run=self.dry_run)
        set_cycle_id(result.cycle_id)
        start = time.monotonic()

        self.logger.info(
            "Starting dunning cycle" + (" (DRY-RUN)" if self.dry_run else ""),
            extra={"dry_run": self.dry_run},
        )

        try:
            for index, tenant in enumerate(tenants):
                if cancel.is_set():
                    result.cancelled = True
                    break
                if index > 0:
                    self._sleep(self.tenant_delay)

                tenant_result = self.process_tenant(tenant, cancel)
                result.tenants.append(tenant_result)
                if tenant_result.cancelled:
                    result.cancelled = True
                    break

            result.processing_time_seconds = time.monotonic() - start
            set_tenant(None)
            self.logger.info(
                "Dunning cycle finished",
                extra={
                    "tenants": len(result.tenants),
                    "sent": result.total(OrderOutcome.SENT),
                    "dry_run_orders": result.total(OrderOutcome.DRY_RUN),
                    "failed": result.total(OrderOutcome.FAILED),
                    "cancelled": result.cancelled,
                    "duration": result.processing_time_seconds,
                },
            )
        finally:
            set_tenant(None)
            set_cycle_id(None)
        return result

    def process_tenant(
        self, tenant: TenantConfig, cancel: threading.Event | None = None
    ) -> TenantResult:
        """Process all reminded orders of one tenant.

        Errors that prevent processing the tenant (authentication, channel
        resolution, order search) are recorded on the result, not raised.
        """
        cancel = cancel or threading.Event()
        set_tenant(tenant.label)
        result = TenantResult(tenant=tenant.label)
        policies = DunningPolicies(
            tenant, self.marker_prefix, self.ignore_tag, self.legacy_tag_markers
        )

        client = None
        mailer = None
        try:
            client = self.client_factory(tenant)
            mailer = self.mailer_factory(tenant)
            channel_id = client.sales_channel_id()
            self.logger.info(
                "Processing shop",
                extra={"url": tenant.base_url, "sales_channel_id": channel_id},
            )
            first = True
            for order in client.iter_reminded_orders(channel_id, self.page_size):
                if cancel.is_set():
                    result.cancelled = True
                    self.logger.info("Cancellation requested, stopping shop")
                    break
                if not first:
                    self._sleep(self.order_delay)
                first = False
                result.record(self.process_order(tenant, client, mailer, policies, order))
        except Exception as e:
            result.error = str(e)
            self.logger.error(
                "Error processing shop",
                extra={"url": tenant.base_url, "error": str(e)},
            )
        finally:
            if client is not None:
                client.close()
            if mailer is not None:
                mailer.close()

        self.logger.info(
            "Shop processed",
            extra={
                "outcomes": {k.value: v for k, v in result.outcomes.items()},
                "cancelled": result.cancelled,
            },
        )
        return result

    def process_order(
        self,
        tenant: TenantConfig,
        client: ShopwareClient,
        mailer: DunningMailer,
        policies: DunningPolicies,
        order: Order,
    ) -> OrderOutcome:
        """Apply the dunning rules to a single order.

        Never raises for order-level failures; they are logged and reported
        as OrderOutcome.FAILED so the order is retried next cycle.
        """
        log_extra = {"order_number": order.order_number, "order_id": order.order_id}
        try:
            if not order.documents:
                self.logger.info("Order has no documents", extra=log_extra)
                return OrderOutcome.NO_DOCUMENTS

            invoice = find_invoice(order)
            if invoice is None:
                self._notify_missing_invoice(mailer, order, log_extra)
                return OrderOutcome.MISSING_INVOICE

            if is_paid(order):
                self.logger.info("Order is paid", extra=log_extra)
                return OrderOutcome.PAID

            now = int(self._clock())
            stage = policies.next_stage(order, now)
            if stage is DunningStage.NONE:
                self.logger.debug("No dunning action due", extra=log_extra)
                return OrderOutcome.NO_ACTION

            return self._execute_stage(
                client, mailer, policies, order, invoice, STAGE_SPECS[stage], now
            )
        except Exception as e:
            self.logger.error(
                "Error processing order",
                extra={**log_extra, "error_type": type(e).__name__, "error": str(e)},
            )
            return OrderOutcome.FAILED

    def _notify_missing_invoice(
        self, mailer: DunningMailer, order: Order, log_extra: dict
    ) -> None:
        if self.dry_run:
            self.logger.info(
                "DRY-RUN: Would notify shop about order without invoice",
                extra={**log_extra, "to": mailer.tenant.no_invoice_email},
            )
            return

        mailer.send(mailer.compose_missing_invoice(order))
        self.logger.info("Notified shop about order without invoice", extra=log_extra)

    def _execute_stage(
        self,
        client: ShopwareClient,
        mailer: DunningMailer,
        policies: DunningPolicies,
        order: Order,
        invoice: OrderDocument,
        spec: StageSpec,
        now: int,
    ) -> OrderOutcome:
        log_extra = {
            "order_number": order.order_number,
            "order_id": order.order_id,
            "stage": spec.key,
        }

        # Rejects a second write of the same stage before anything is sent
        markers = policies.markers_for(order).with_marker(spec.stage, now)

        pdf = client.download_document(invoice.document_id, invoice.deep_link_code)
        email = mailer.compose_dunning(
            order, invoice, spec, pdf, datetime.fromtimestamp(now, tz=UTC)
        )

        if self.dry_run:
            pdf_path, html_path = self._save_artifacts(
                mailer.tenant, order, invoice, spec, pdf, email.html
            )
            self.logger.info(
                f"DRY-RUN: Would send {spec.label}",
                extra={**log_extra, "pdf_path": str(pdf_path), "html_path": str(html_path)},
            )
            return OrderOutcome.DRY_RUN

        response = mailer.send(email)
        self.logger.info(
            f"Sent {spec.label}",
            extra={**log_extra, "message_id": response.message_id},
        )

        client.update_order(
            order.order_id,
            tags=[{"name": spec.tag}],
            custom_fields={
                **order.custom_fields,
                spec.marker_field(self.marker_prefix): markers.get(spec.stage),
            },
        )
        self.logger.info("Recorded dunning stage on order", extra=log_extra)
        return OrderOutcome.SENT

    def _save_artifacts(
        self,
        tenant: TenantConfig,
        order: Order,
        invoice: OrderDocument,
        spec: StageSpec,
        pdf: bytes,
        html: str,
    ) -> tuple[Path, Path]:
        """Write the invoice PDF and the rendered notice for inspection."""
        directory = self.dry_run_dir / _path_component(tenant.label)
        directory.mkdir(parents=True, exist_ok=True)

        stem = f"{_path_component(order.order_number)}_{_path_component(invoice.document_id)}"
        pdf_path = directory / f"{stem}.pdf"
        html_path = directory / f"{stem}_{spec.key}.html"
        pdf_path.write_bytes(pdf)
        html_path.write_text(html, encoding="utf-8")
        return pdf_path, html_path
