"""Shared fixtures for shop dunning tests."""

from typing import Any

import pytest

from agents.shop_dunning.config import TenantConfig
from agents.shop_dunning.dto import DunningStage

CHANNEL_ID = "98432def39fc4624b33213a56b8c944d"


@pytest.fixture
def shop_entry() -> dict[str, Any]:
    """Valid raw shop configuration entry."""
    return {
        "url": "https://shop.example.com/",
        "api_key": "SWIAKEY",
        "api_secret": "secret",
        "sales_channel_id": CHANNEL_ID,
        "sales_channel_domain": "shop.example.com",
        "brevo_api_key": "xkeysib-test",
        "no_invoice_email": "billing@shop.example.com",
        "ze_template": "ze.html.j2",
        "mahnung1_template": "mahnung1.html.j2",
        "mahnung2_template": "mahnung2.html.j2",
        "due_days": 14,
    }


@pytest.fixture
def tenant() -> TenantConfig:
    return TenantConfig(
        base_url="https://shop.example.com",
        api_key="SWIAKEY",
        api_secret="secret",
        sales_channel_domain="shop.example.com",
        brevo_api_key="xkeysib-test",
        no_invoice_email="billing@shop.example.com",
        templates={
            DunningStage.STAGE_1: "ze.html.j2",
            DunningStage.STAGE_2: "mahnung1.html.j2",
            DunningStage.STAGE_3: "mahnung2.html.j2",
        },
        due_days=14,
        sales_channel_id=CHANNEL_ID,
    )


def order_payload(
    order_id: str = "o1",
    order_number: str = "10001",
    documents: list[dict] | None = None,
    payment_state: str = "reminded",
    tags: list[str] | None = None,
    custom_fields: dict | None = None,
    email: str | None = "kunde@example.com",
) -> dict[str, Any]:
    """Build a Shopware order entity as returned by /api/search/order."""
    if documents is None:
        documents = [
            {
                "id": f"doc-{order_id}",
                "documentNumber": "RE-1000",
                "deepLinkCode": "deeplink",
                "documentType": {"technicalName": "invoice"},
            }
        ]
    return {
        "id": order_id,
        "orderNumber": order_number,
        "orderDateTime": "2025-03-05T10:15:00.000+00:00",
        "amountTotal": 1234.56,
        "customerComment": None,
        "orderCustomer": {"email": email},
        "billingAddress": {"firstName": "Erika", "lastName": "Mustermann"},
        "salesChannel": {"name": "Storefront"},
        "documents": documents,
        "transactions": [{"id": f"tx-{order_id}", "stateMachineState": {"technicalName": payment_state}}],
        "tags": [{"name": name} for name in tags or []],
        "customFields": custom_fields,
    }


@pytest.fixture
def make_payload():
    """Factory for Shopware order entities."""
    return order_payload
