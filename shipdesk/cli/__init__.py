"""Command-line interface for ShipDesk."""
