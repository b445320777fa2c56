"""Test fixtures and utilities for lakehouse CDC testing."""

from tests.fixtures.fakes import InMemoryCatalog, ListChangeStream, ManualClock, ddl_event, row_event

__all__ = [
    "InMemoryCatalog",
    "ListChangeStream",
    "ManualClock",
    "ddl_event",
    "row_event",
]
