"""Shared fixtures for dedup tests."""

from __future__ import annotations

import pytest

from dealsift.config import Settings
from dealsift.dedup.models import Listing
from tests.factories import make_listing


@pytest.fixture()
def settings() -> Settings:
    return Settings(database_url="", max_workers=2)


@pytest.fixture()
def joes_plumbing_listings() -> list[Listing]:
    """Two listings of one plumbing business on two platforms plus an unrelated one."""
    return [
        make_listing(
            "lst-a",
            "bizbuysell",
            "Joe's Plumbing LLC",
            city="Denver",
            state="CO",
            category="Plumbing",
            asking_price=450_000,
            broker_phone="303-555-0100",
        ),
        make_listing(
            "lst-b",
            "bizquest",
            "Joes Plumbing",
            city="Denver",
            state="Colorado",
            category="plumbing",
            asking_price=455_000,
            broker_phone="(303) 555-0100",
        ),
        make_listing(
            "lst-c",
            "dealstream",
            "Unrelated HVAC Co",
            city="Boulder",
            state="CO",
            category="HVAC",
            asking_price=900_000,
        ),
    ]
