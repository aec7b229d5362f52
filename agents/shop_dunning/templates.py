"""Jinja2 template engine for dunning emails.

Templates are looked up by the tenant's template id in the configured
templates directory first, then in the packaged default templates.
Besides Jinja2 variables, the legacy ``##KEY##`` placeholders are
substituted so existing shop templates keep working.
"""

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound
from markupsafe import escape

from .config import TenantConfig
from .dto import Order, OrderDocument, StageSpec
from .errors import TemplateMissingError

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "mail_templates" / "default"
TZ_EUROPE_BERLIN = ZoneInfo("Europe/Berlin")

GERMAN_MONTHS = (
    "Januar",
    "Februar",
    "März",
    "April",
    "Mai",
    "Juni",
    "Juli",
    "August",
    "September",
    "Oktober",
    "November",
    "Dezember",
)

LEGACY_PLACEHOLDERS = {
    "##FIRSTNAME##": "first_name",
    "##LASTNAME##": "last_name",
    "##ORDERID##": "order_number",
    "##ORDERDATE##": "order_date",
    "##ORDERAMOUNT##": "order_amount",
    "##INVOICENUM##": "invoice_number",
    "##DUEDATE##": "due_date",
    "##DUEDAYS##": "due_days",
    "##SALESCHANNEL##": "sales_channel",
    "##CUSTOMERCOMMENT##": "customer_comment",
}


def format_date_de(value: datetime | None) -> str:
    """Format a datetime as German long date in Europe/Berlin, e.g. '5. März 2025'."""
    if value is None:
        return "N/A"
    if value.tzinfo is not None:
        value = value.astimezone(TZ_EUROPE_BERLIN)
    return f"{value.day}. {GERMAN_MONTHS[value.month - 1]} {value.year}"


def format_amount_eur(amount: Decimal) -> str:
    """Format an amount with German separators, e.g. '1.234,56 EUR'."""
    quantized = Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    formatted = f"{quantized:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{formatted} EUR"


class TemplateEngine:
    """Jinja2 template engine for dunning notices."""

    def __init__(self, templates_dir: str | Path):
        """Initialize template engine.

        Args:
            templates_dir: Directory holding the tenants' templates
        """
        self.templates_dir = Path(templates_dir)
        self.logger = logging.getLogger(__name__)

        self.env = Environment(
            loader=FileSystemLoader([str(self.templates_dir), str(DEFAULT_TEMPLATE_DIR)]),
            undefined=StrictUndefined,
            autoescape=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def build_context(
        self,
        tenant: TenantConfig,
        order: Order,
        invoice: OrderDocument,
        spec: StageSpec,
        now: datetime,
    ) -> dict[str, Any]:
        """Prepare template variables for an order and stage."""
        return {
            "first_name": order.first_name,
            "last_name": order.last_name,
            "order_number": order.order_number,
            "order_date": format_date_de(order.order_date),
            "order_amount": format_amount_eur(order.amount_total),
            "invoice_number": invoice.document_number or "N/A",
            "due_date": format_date_de(now + timedelta(days=tenant.due_days)),
            "due_days": tenant.due_days,
            "sales_channel": order.sales_channel_name or "Unknown",
            "customer_comment": order.customer_comment or "No comment provided",
            "stage_label": spec.label,
            "stage_key": spec.key,
        }

    def render(self, template_id: str, context: dict[str, Any]) -> str:
        """Render a template by id.

        Args:
            template_id: Template file name relative to the templates directory
            context: Template variables

        Returns:
            Rendered HTML

        Raises:
            TemplateMissingError: If the template cannot be found
        """
        try:
            template = self.env.get_template(template_id)
        except TemplateNotFound as e:
            error_msg = f"Email template '{template_id}' not found in {self.templates_dir}"
            self.logger.error(error_msg, extra={"template": template_id})
            raise TemplateMissingError(error_msg) from e

        self.logger.debug("Rendering template", extra={"template_path": template.filename})
        content = template.render(**context)

        for placeholder, key in LEGACY_PLACEHOLDERS.items():
            if placeholder in content:
                content = content.replace(placeholder, str(escape(context[key])))
        return content

    def render_stage(
        self,
        tenant: TenantConfig,
        order: Order,
        invoice: OrderDocument,
        spec: StageSpec,
        now: datetime,
    ) -> str:
        """Render the tenant's template for a dunning stage."""
        context = self.build_context(tenant, order, invoice, spec, now)
        return self.render(tenant.template_for(spec.stage), context)
