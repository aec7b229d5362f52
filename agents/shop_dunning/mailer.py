"""Composition and delivery of dunning emails for one tenant.

Wraps the Brevo client: builds the stage notice with the invoice PDF
attached, or the missing-invoice notice for the shop contact, and turns
provider rejections into DeliveryError.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from markupsafe import escape

from agents.comm.outbound_tags import generate_message_id
from backend.integrations.brevo_client import BrevoAttachment, BrevoClient, BrevoResponse

from .config import TenantConfig
from .dto import Order, OrderDocument, StageSpec
from .errors import DeliveryError, MissingFieldError
from .templates import TemplateEngine

MISSING_INVOICE_KEY = "no_invoice"


@dataclass
class OutboundEmail:
    """Email ready to be handed to the provider."""

    to: str
    subject: str
    html: str
    message_id: str
    attachments: list[BrevoAttachment] = field(default_factory=list)


class DunningMailer:
    """Builds and sends the emails of one tenant."""

    def __init__(
        self,
        tenant: TenantConfig,
        brevo_client: BrevoClient,
        template_engine: TemplateEngine,
    ):
        """Initialize mailer.

        Args:
            tenant: Tenant configuration (sender, templates, contact address)
            brevo_client: Brevo client authenticated with the tenant's API key
            template_engine: Engine rendering the stage templates
        """
        self.tenant = tenant
        self.brevo_client = brevo_client
        self.template_engine = template_engine
        self.logger = logging.getLogger(__name__)

    def compose_dunning(
        self,
        order: Order,
        invoice: OrderDocument,
        spec: StageSpec,
        pdf: bytes,
        now: datetime,
    ) -> OutboundEmail:
        """Compose the notice of a dunning stage.

        Args:
            order: Order to remind
            invoice: Invoice document of the order
            spec: Stage to send
            pdf: Invoice PDF, attached as rechnung_<orderNumber>.pdf
            now: Reference time for the due date

        Returns:
            Composed email

        Raises:
            MissingFieldError: If the order has no customer email
            TemplateMissingError: If the stage template cannot be loaded
        """
        if not order.customer_email:
            raise MissingFieldError(f"Order {order.order_number} has no customer email")

        html = self.template_engine.render_stage(self.tenant, order, invoice, spec, now)
        return OutboundEmail(
            to=order.customer_email,
            subject=spec.subject(order.order_number),
            html=html,
            message_id=generate_message_id(self.tenant.label, order.order_number, spec.key),
            attachments=[BrevoAttachment(name=f"rechnung_{order.order_number}.pdf", content=pdf)],
        )

    def compose_missing_invoice(self, order: Order) -> OutboundEmail:
        """Compose the notice to the shop contact about an order without invoice."""
        number = escape(order.order_number)
        html = (
            "<p>Die folgende Bestellung befindet sich im Zahlungsstatus 'reminded', "
            "hat aber keine Rechnung:</p>"
            f"<p>Bestellnummer: {number}<br>"
            f"Verkaufskanal: {escape(order.sales_channel_name or self.tenant.label)}</p>"
            "<p>Bitte erstellen Sie die Rechnung, damit der Mahnlauf fortgesetzt werden kann.</p>"
        )
        return OutboundEmail(
            to=self.tenant.no_invoice_email,
            subject=f"Order without Invoice: {order.order_number}",
            html=html,
            message_id=generate_message_id(
                self.tenant.label, order.order_number, MISSING_INVOICE_KEY
            ),
        )

    def send(self, email: OutboundEmail) -> BrevoResponse:
        """Deliver an email via Brevo.

        Raises:
            DeliveryError: If Brevo rejects the message or is unreachable
        """
        response = self.brevo_client.send_transactional(
            to=email.to,
            subject=email.subject,
            html=email.html,
            tenant_id=self.tenant.label,
            sender_email=self.tenant.sender_email,
            sender_name=self.tenant.sender_name,
            attachments=email.attachments or None,
            message_id=email.message_id,
        )
        if not response.success:
            raise DeliveryError(response.error or f"Delivery failed for {email.message_id}")
        return response

    def close(self) -> None:
        self.brevo_client.close()
