"""ShipDesk: shipment lifecycle and batch carrier-label back office."""

__version__ = "0.4.0"
