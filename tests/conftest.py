"""Shared test helpers."""

from datetime import date
from decimal import Decimal

import pytest

from recurring_engine.models import RecurringDefinition


TENANT = "tenant-1"


@pytest.fixture
def make_definition():
    """Factory for auto-apply-ready definitions with sensible defaults."""

    def _make(**overrides) -> RecurringDefinition:
        data = {
            "tenant_id": TENANT,
            "name": "Rent",
            "amount": Decimal("1200"),
            "source_account_id": "checking",
            "next_occurrence_date": date(2025, 2, 1),
            "interval_months": 1,
            "auto_apply_enabled": True,
        }
        data.update(overrides)
        return RecurringDefinition(**data)

    return _make
