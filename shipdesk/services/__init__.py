"""Service layer for ShipDesk.

Provides the shipment store and lifecycle rules, the carrier gateway,
the resilient storefront API client and the batch label orchestrator.
"""

from shipdesk.services.api_client import ResilientApiClient
from shipdesk.services.batch_orchestrator import (
    BatchDefaults,
    BatchJob,
    BatchOrchestrator,
    BatchResult,
    JobState,
)
from shipdesk.services.carrier_gateway import CarrierGateway
from shipdesk.services.order_source import HttpOrderSource, Order, OrderFilters
from shipdesk.services.shipment_service import ShipmentService
from shipdesk.services.token_manager import TokenManager

__all__ = [
    "ShipmentService",
    "CarrierGateway",
    "ResilientApiClient",
    "TokenManager",
    "HttpOrderSource",
    "Order",
    "OrderFilters",
    "BatchOrchestrator",
    "BatchJob",
    "BatchResult",
    "BatchDefaults",
    "JobState",
]
