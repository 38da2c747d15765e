"""Unit-test collection hooks."""

import pytest


def pytest_collection_modifyitems(config, items):
    """Mark everything collected under tests/unit as a unit test."""
    for item in items:
        if "unit" in item.path.parts:
            item.add_marker(pytest.mark.unit)
