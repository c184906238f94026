"""
Catalog/inventory gate.

Renewals are always priced live: every line item is quoted against the
catalog at charge time. The gate answers with the current unit price and
stock level, or ``None`` when the product no longer exists.
"""

from collections.abc import Mapping
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from flora.platform.billing.exceptions import InventoryUnavailableError
from flora.platform.billing.ledger.models import SkippedItem, SkipReason
from flora.platform.billing.subscriptions.models import LineItem

logger = structlog.get_logger(__name__)


class StockQuote(BaseModel):
    """Current price and availability of a product."""

    model_config = ConfigDict(frozen=True)

    price_cents: int = Field(ge=0)
    available_qty: int = Field(ge=0)
    active: bool = True


class InventoryGate(Protocol):
    async def get_current_price_and_stock(self, product_id: str) -> StockQuote | None:
        """Quote a product; ``None`` means it does not exist.

        Raises:
            InventoryUnavailableError: the catalog could not be reached
        """
        ...


def check_availability(item: LineItem, quote: StockQuote | None) -> SkippedItem | None:
    """Return why ``item`` cannot be fulfilled from ``quote``, or None if it can."""
    if quote is None or not quote.active:
        return SkippedItem(
            product_id=item.product_id,
            quantity=item.quantity,
            reason_code=SkipReason.DISCONTINUED,
            reason="discontinued",
        )
    if quote.available_qty == 0:
        return SkippedItem(
            product_id=item.product_id,
            quantity=item.quantity,
            reason_code=SkipReason.OUT_OF_STOCK,
            reason="out of stock",
        )
    if quote.available_qty < item.quantity:
        return SkippedItem(
            product_id=item.product_id,
            quantity=item.quantity,
            reason_code=SkipReason.INSUFFICIENT_STOCK,
            reason=(
                f"insufficient stock (available {quote.available_qty}, needed {item.quantity})"
            ),
        )
    return None


class StaticInventoryGate:
    """In-memory catalog for local runs and tests."""

    def __init__(self, quotes: Mapping[str, StockQuote] | None = None) -> None:
        self.quotes: dict[str, StockQuote] = dict(quotes or {})
        self.requests: list[str] = []

    def set_quote(self, product_id: str, price_cents: int, available_qty: int, active: bool = True) -> None:
        self.quotes[product_id] = StockQuote(
            price_cents=price_cents, available_qty=available_qty, active=active
        )

    def remove(self, product_id: str) -> None:
        self.quotes.pop(product_id, None)

    async def get_current_price_and_stock(self, product_id: str) -> StockQuote | None:
        self.requests.append(product_id)
        return self.quotes.get(product_id)


class HttpInventoryGate:
    """Inventory gate backed by the catalog service's HTTP API.

    ``GET {base_url}/products/{product_id}`` is expected to return
    ``{"price_cents": int, "available_qty": int, "active": bool}``; a 404
    means the product was removed from the catalog.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls) -> "HttpInventoryGate":
        from flora.platform.settings import settings

        return cls(
            base_url=settings.catalog.base_url,
            api_token=settings.catalog.api_token or None,
            timeout=settings.catalog.timeout_seconds,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def get_current_price_and_stock(self, product_id: str) -> StockQuote | None:
        client = await self._get_client()
        try:
            response = await client.get(f"/products/{product_id}")
        except httpx.RequestError as e:
            logger.error("catalog.request.failed", product_id=product_id, error=str(e))
            raise InventoryUnavailableError(
                f"Catalog request failed for {product_id}: {e}", product_id=product_id
            ) from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.error(
                "catalog.request.error",
                product_id=product_id,
                status_code=response.status_code,
            )
            raise InventoryUnavailableError(
                f"Catalog returned {response.status_code} for {product_id}",
                product_id=product_id,
            )

        try:
            payload: dict[str, Any] = response.json()
            return StockQuote(
                price_cents=payload["price_cents"],
                available_qty=payload.get("available_qty", 0),
                active=payload.get("active", True),
            )
        except (ValueError, KeyError, TypeError) as e:
            # pydantic ValidationError and JSONDecodeError are ValueErrors
            logger.error("catalog.response.invalid", product_id=product_id, error=str(e))
            raise InventoryUnavailableError(
                f"Catalog returned an unreadable quote for {product_id}", product_id=product_id
            ) from e
