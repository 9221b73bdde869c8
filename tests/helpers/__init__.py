"""Test helpers: in-memory collaborators for the batch and gateway tests."""

from tests.helpers.fakes import (
    FakeCarrierBackend,
    InMemoryOrderSource,
    RecordingPrinter,
    make_jwt,
    make_label,
)

__all__ = [
    "FakeCarrierBackend",
    "InMemoryOrderSource",
    "RecordingPrinter",
    "make_jwt",
    "make_label",
]
