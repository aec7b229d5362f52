"""Shopware Admin API client for the shop dunning agent.

Provides order search, document download and order updates with
client-credentials authentication, token caching and retry logic.
"""

import logging
import time
from typing import Any, Callable, Iterator

import requests

from backend.core.config import settings

from .config import TenantConfig
from .dto import Order
from .errors import ApiRequestError, AuthenticationError, NotFoundError

RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})

ORDER_ASSOCIATIONS: dict[str, Any] = {
    "transactions": {"associations": {"stateMachineState": {}}},
    "tags": {},
    "documents": {"associations": {"documentType": {}}},
    "billingAddress": {},
    "orderCustomer": {},
    "salesChannel": {},
}


class ShopwareClient:
    """Client for one tenant's Shopware Admin API.

    One instance serves one tenant for one dunning cycle. The bearer token
    and a resolved sales channel id are cached on the instance.
    """

    def __init__(
        self,
        tenant: TenantConfig,
        session: requests.Session | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base_ms: int | None = None,
        token_expiry_buffer: int | None = None,
        ignore_tag: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize Shopware client.

        Args:
            tenant: Tenant configuration with API credentials
            session: Optional requests session (for testing)
            timeout: Per-request timeout in seconds
            max_retries: Attempts per request including the first one
            backoff_base_ms: Backoff base, delay is 2^attempt * base
            token_expiry_buffer: Seconds subtracted from the token lifetime
            ignore_tag: Orders carrying this tag are excluded from searches
            sleep: Sleep function used for backoff
            clock: Monotonic clock used for token expiry
        """
        self.tenant = tenant
        self.base_url = tenant.base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else settings.SHOPWARE_TIMEOUT_SEC
        self.max_retries = max(
            1, max_retries if max_retries is not None else settings.SHOPWARE_RETRY_MAX
        )
        self.backoff_base_ms = (
            backoff_base_ms if backoff_base_ms is not None else settings.SHOPWARE_BACKOFF_BASE_MS
        )
        self.token_expiry_buffer = (
            token_expiry_buffer
            if token_expiry_buffer is not None
            else settings.SHOPWARE_TOKEN_EXPIRY_BUFFER_SEC
        )
        self.ignore_tag = ignore_tag if ignore_tag is not None else settings.DUNNING_IGNORE_TAG
        self._sleep = sleep
        self._clock = clock

        self._token = ""
        self._token_expires_at = 0.0
        self._channel_ids: dict[str, str] = {}

        self.logger = logging.getLogger(__name__)

    # -- sales channels -------------------------------------------------

    def sales_channel_id(self) -> str:
        """Get the tenant's sales channel id, resolving a name if needed."""
        if self.tenant.sales_channel_id:
            return self.tenant.sales_channel_id
        return self.resolve_sales_channel_id(self.tenant.sales_channel_name or "")

    def resolve_sales_channel_id(self, name: str) -> str:
        """Resolve a sales channel name to its id.

        Args:
            name: Sales channel name

        Returns:
            Sales channel id

        Raises:
            NotFoundError: If no sales channel has this name
        """
        if name in self._channel_ids:
            return self._channel_ids[name]

        response = self._request(
            "POST",
            "/api/search/sales-channel",
            {
                "filter": [{"type": "equals", "field": "name", "value": name}],
                "limit": 1,
            },
        )
        rows = self._json(response).get("data") or []
        if not rows or not rows[0].get("id"):
            raise NotFoundError(f"Sales channel not found: {name}", status_code=404)

        channel_id = str(rows[0]["id"])
        self._channel_ids[name] = channel_id
        self.logger.info(
            "Resolved sales channel",
            extra={"sales_channel_name": name, "sales_channel_id": channel_id},
        )
        return channel_id

    # -- orders ---------------------------------------------------------

    def _order_criteria(self, channel_id: str, page: int, limit: int) -> dict[str, Any]:
        return {
            "page": page,
            "limit": limit,
            "associations": ORDER_ASSOCIATIONS,
            "sort": [{"field": "orderNumber", "order": "ASC"}],
            "filter": [
                {
                    "type": "equals",
                    "field": "transactions.stateMachineState.technicalName",
                    "value": "reminded",
                },
                {"type": "equals", "field": "salesChannelId", "value": channel_id},
                {
                    "type": "not",
                    "operator": "and",
                    "queries": [
                        {"type": "equals", "field": "tags.name", "value": self.ignore_tag}
                    ],
                },
            ],
        }

    def _search_page(self, channel_id: str, page: int, limit: int) -> tuple[list[Order], int]:
        start = time.monotonic()
        response = self._request(
            "POST", "/api/search/order", self._order_criteria(channel_id, page, limit)
        )
        rows = self._json(response).get("data") or []

        orders = []
        for row in rows:
            try:
                orders.append(Order.from_api(row))
            except ValueError as exc:
                self.logger.warning(
                    "Skipping malformed order entity",
                    extra={"sales_channel_id": channel_id, "error": str(exc)},
                )

        self.logger.debug(
            "Fetched orders",
            extra={
                "sales_channel_id": channel_id,
                "page": page,
                "count": len(rows),
                "duration": time.monotonic() - start,
            },
        )
        return orders, len(rows)

    def search_reminded_orders(self, channel_id: str, page: int = 1, limit: int = 50) -> list[Order]:
        """Fetch one page of orders in payment state 'reminded'.

        Args:
            channel_id: Sales channel id
            page: 1-based page number
            limit: Page size

        Returns:
            Parsed orders of this page
        """
        orders, _ = self._search_page(channel_id, page, limit)
        return orders

    def iter_reminded_orders(self, channel_id: str, page_size: int = 50) -> Iterator[Order]:
        """Iterate all reminded orders, page by page, until a short page."""
        page = 1
        while True:
            orders, fetched = self._search_page(channel_id, page, page_size)
            yield from orders
            if fetched < page_size:
                return
            page += 1

    def download_document(self, document_id: str, deep_link_code: str | None = None) -> bytes:
        """Download a document (PDF) of an order.

        Args:
            document_id: Document id
            deep_link_code: Optional deep link code of the document

        Returns:
            Raw document bytes

        Raises:
            ApiRequestError: On request failure or empty document
        """
        if deep_link_code:
            endpoint = f"/api/_action/document/{document_id}/{deep_link_code}"
        else:
            endpoint = f"/api/document/{document_id}/download"

        response = self._request("GET", endpoint, accept="application/pdf")
        if not response.content:
            raise ApiRequestError(f"Empty document {document_id}")
        return response.content

    def update_order(
        self,
        order_id: str,
        tags: list[dict[str, Any]] | None = None,
        custom_fields: dict[str, Any] | None = None,
    ) -> None:
        """Update tags and/or custom fields of an order.

        Raises:
            ValueError: If neither tags nor custom fields are given
        """
        payload: dict[str, Any] = {}
        if tags is not None:
            payload["tags"] = tags
        if custom_fields is not None:
            payload["customFields"] = custom_fields
        if not payload:
            raise ValueError("update_order requires tags or custom_fields")

        self._request("PATCH", f"/api/order/{order_id}", payload)

    # -- transport ------------------------------------------------------

    def _json(self, response: requests.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ApiRequestError("Invalid JSON response", response.status_code) from exc
        if not isinstance(data, dict):
            raise ApiRequestError("Unexpected JSON response", response.status_code)
        return data

    def _backoff(self, attempt: int, endpoint: str, error: str) -> None:
        delay = (2 ** attempt) * self.backoff_base_ms / 1000.0
        self.logger.warning(
            "Retrying request",
            extra={
                "endpoint": endpoint,
                "attempt": attempt,
                "delay": delay,
                "sales_channel": self.tenant.label,
                "error": error,
            },
        )
        self._sleep(delay)

    def _request(
        self,
        method: str,
        endpoint: str,
        body: dict[str, Any] | None = None,
        accept: str = "application/json",
    ) -> requests.Response:
        """Perform an API request with token management and retries.

        Raises:
            AuthenticationError: If the token is rejected after a forced refresh
            NotFoundError: On 404
            ApiRequestError: On other errors or an exhausted retry budget
        """
        url = f"{self.base_url}{endpoint}"
        refreshed = False
        attempt = 0

        while True:
            attempt += 1
            headers = {"Authorization": f"Bearer {self._get_token()}", "Accept": accept}
            try:
                response = self.session.request(
                    method, url, headers=headers, json=body, timeout=self.timeout
                )
            except requests.RequestException as exc:
                if attempt >= self.max_retries:
                    raise ApiRequestError(
                        f"Failed to request {endpoint} after {attempt} attempts: {exc}"
                    ) from exc
                self._backoff(attempt, endpoint, str(exc))
                continue

            status = response.status_code
            if status < 400:
                return response

            if status == 401:
                if refreshed or attempt >= self.max_retries:
                    raise AuthenticationError(f"Unauthorized request to {endpoint}", status)
                refreshed = True
                self._refresh_token()
                continue

            if status in RETRYABLE_STATUS:
                if attempt >= self.max_retries:
                    raise ApiRequestError(
                        f"Failed to request {endpoint} after {attempt} attempts: HTTP {status}",
                        status,
                    )
                self._backoff(attempt, endpoint, f"HTTP {status}")
                continue

            if status == 404:
                raise NotFoundError(f"Not found: {endpoint}", status)
            raise ApiRequestError(f"Request to {endpoint} failed: HTTP {status} {response.text[:200]}", status)

    def _get_token(self) -> str:
        """Get the cached access token, refreshing it when expired."""
        if not self._token or self._clock() >= self._token_expires_at:
            self._refresh_token()
        return self._token

    def _refresh_token(self) -> None:
        """Exchange client credentials for a new access token.

        Raises:
            AuthenticationError: If the token endpoint fails
        """
        try:
            response = self.session.post(
                f"{self.base_url}/api/oauth/token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self.tenant.api_key,
                    "client_secret": self.tenant.api_secret,
                },
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
            token = data["access_token"]
            expires_in = int(data.get("expires_in", 600))
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            self.logger.error(
                "Failed to refresh token",
                extra={"url": self.base_url, "sales_channel": self.tenant.label, "error": str(exc)},
            )
            raise AuthenticationError(f"Failed to authenticate: {exc}") from exc

        self._token = token
        self._token_expires_at = self._clock() + max(expires_in - self.token_expiry_buffer, 0)
        self.logger.debug(
            "Refreshed token", extra={"url": self.base_url, "sales_channel": self.tenant.label}
        )

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
