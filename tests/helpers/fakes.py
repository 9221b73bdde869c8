"""In-memory fakes for the order source, carrier backends and printer."""

import asyncio
import time
from typing import Any

import jwt

from shipdesk.services.carrier_models import LabelRequest, LabelResponse
from shipdesk.services.carrier_services import Carrier, build_tracking_url
from shipdesk.services.order_source import Order, OrderFilters


def make_jwt(expires_in: float, secret: str = "test-secret") -> str:
    """Signed JWT whose exp claim is ``expires_in`` seconds from now."""
    claims = {"sub": "operator", "exp": int(time.time() + expires_in)}
    return jwt.encode(claims, secret, algorithm="HS256")


def make_label(
    order_id: str,
    carrier: Carrier = Carrier.UPS,
    service: str = "UPS Ground",
    cost: str | None = "12.50",
) -> LabelResponse:
    """Label response as a backend would return it."""
    tracking = f"TRK-{order_id}"
    return LabelResponse(
        tracking_number=tracking,
        tracking_url=build_tracking_url(carrier, tracking),
        label_url=f"https://labels.example.com/{order_id}.pdf",
        shipment_id=f"SHP-{order_id}",
        cost=cost,
        currency="USD",
        carrier=carrier,
        service=service,
        estimated_delivery="2026-03-06",
    )


class InMemoryOrderSource:
    """OrderSource over a fixed list of orders."""

    def __init__(self, orders: list[Order]) -> None:
        self.orders = orders
        self.calls: list[OrderFilters] = []

    async def fetch_orders(self, filters: OrderFilters) -> list[Order]:
        self.calls.append(filters)
        return list(self.orders)


class FakeCarrierBackend:
    """Carrier backend that records calls and fails on demand.

    Attributes:
        failures: order_id -> exception raised for that order.
        calls: Requests received, in call order.
        max_in_flight: Highest number of concurrent create_label calls.
    """

    max_packages: int | None = None
    single_unit_system = False

    def __init__(
        self,
        carrier: Carrier = Carrier.UPS,
        delay: float = 0.0,
        failures: dict[str, Exception] | None = None,
    ) -> None:
        self.carrier = carrier
        self.delay = delay
        self.failures = failures or {}
        self.calls: list[LabelRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.before_return: Any = None

    async def create_label(self, request: LabelRequest) -> LabelResponse:
        self.calls.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.before_return is not None:
                await self.before_return(request)
            error = self.failures.get(request.order_id)
            if error is not None:
                raise error
            return make_label(request.order_id, self.carrier, request.service)
        finally:
            self.in_flight -= 1


class RecordingPrinter:
    """LabelPrinter that remembers what it was asked to print."""

    def __init__(self) -> None:
        self.printed: list[list[str]] = []

    def print_labels(self, label_urls: list[str]) -> None:
        self.printed.append(list(label_urls))
