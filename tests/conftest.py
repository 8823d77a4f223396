# tests/conftest.py
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from mortgage_recast.api import app
from mortgage_recast.calculator import LoanParams


def make_params(**overrides) -> LoanParams:
    """Reference loan: 100k @ 6% over 30 years, no extras, no recast."""
    fields = dict(principal=100_000.0, annual_rate_pct=6.0, term_months=360)
    fields.update(overrides)
    return LoanParams(**fields)


@pytest.fixture
def reference_params():
    return make_params


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def reference_body():
    def _factory(**overrides):
        body = {
            "principal": 100_000,
            "annual_rate_pct": 6,
            "term_months": 360,
            "start_ym": "2025-01",
            "extras": [{"month": 1, "amount": 1000}],
        }
        body.update(overrides)
        return body

    return _factory
