"""Order source: storefront orders awaiting shipment.

The storefront's order API is a collaborator; ShipDesk only reads from
it. Orders arrive as camelCase JSON and are normalized into the Order
model used by the batch orchestrator.
"""

import logging
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shipdesk.services.api_client import ResilientApiClient

logger = logging.getLogger(__name__)

# Status filter options offered by the batch screen
ORDER_STATUSES = ("Pending", "Processing", "Ready to Ship")

DEFAULT_PAGE_SIZE = 100


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Customer(_CamelModel):
    """Order's customer."""

    name: str = Field(default="", description="Customer name")
    email: str | None = Field(None, description="Customer email")


class OrderAddress(_CamelModel):
    """Shipping address as stored on the order."""

    name: str = Field(default="", description="Recipient name")
    company: str | None = Field(None, description="Company name")
    street1: str = Field(default="", description="Address line 1")
    street2: str | None = Field(None, description="Address line 2")
    city: str = Field(default="", description="City")
    state_code: str = Field(default="", description="State/province code")
    postal_code: str = Field(default="", description="Postal code")
    country_code: str = Field(default="US", description="Country code")
    phone: str | None = Field(None, description="Phone number")
    is_residential: bool = Field(default=True, description="Residential delivery")


class OrderItem(_CamelModel):
    """One line item; weight and dimensions are per unit."""

    product_name: str = Field(default="", description="Product name")
    quantity: int = Field(default=1, ge=0, description="Units ordered")
    length: float | None = Field(None, description="Unit length")
    width: float | None = Field(None, description="Unit width")
    height: float | None = Field(None, description="Unit height")
    weight: float | None = Field(None, description="Unit weight")


class Order(_CamelModel):
    """Storefront order, normalized."""

    id: str = Field(..., description="Order ID")
    order_number: str | None = Field(None, description="Human-readable order number")
    status: str = Field(..., description="Order status")
    order_date: str | None = Field(None, description="Order timestamp (ISO)")
    customer: Customer = Field(default_factory=Customer, description="Customer")
    shipping_address: OrderAddress = Field(
        default_factory=OrderAddress, description="Ship-to address",
    )
    items: list[OrderItem] = Field(default_factory=list, description="Line items")

    def total_weight(self) -> float:
        """Sum of item weight times quantity (0 when no item has a weight)."""
        return sum((item.weight or 0) * item.quantity for item in self.items)


class OrderFilters(BaseModel):
    """Filters for fetching orders awaiting shipment."""

    status: str | None = Field(default="Processing", description="Order status filter")
    date_from: str | None = Field(None, description="Start date (ISO format)")
    date_to: str | None = Field(None, description="End date (ISO format)")


class OrderSource(Protocol):
    """Anything that can list orders matching a filter."""

    async def fetch_orders(self, filters: OrderFilters) -> list[Order]:
        """Return orders matching ``filters``."""
        ...


class HttpOrderSource:
    """Reads orders from the storefront ``/orders`` endpoint, page by page."""

    def __init__(self, api: ResilientApiClient, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self._api = api
        self._page_size = page_size

    async def fetch_orders(self, filters: OrderFilters) -> list[Order]:
        """Fetch every page of orders matching ``filters``.

        Raises:
            ApiError: Any failure surfaced by the API client.
        """
        orders: list[Order] = []
        page = 1
        while True:
            params: dict[str, Any] = {"page": page, "limit": self._page_size}
            if filters.status:
                params["status"] = filters.status
            if filters.date_from:
                params["startDate"] = filters.date_from
            if filters.date_to:
                params["endDate"] = filters.date_to

            data = await self._api.request("/orders", params=params)
            batch = data.get("orders", []) if isinstance(data, dict) else data
            orders.extend(Order.model_validate(raw) for raw in batch)

            pagination = data.get("pagination", {}) if isinstance(data, dict) else {}
            total_pages = pagination.get("pages") or pagination.get("totalPages") or page
            if not batch or page >= int(total_pages):
                break
            page += 1

        logger.info("Fetched %d orders (status=%s)", len(orders), filters.status)
        return orders
