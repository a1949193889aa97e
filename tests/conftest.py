"""Pytest configuration for allow-list generator tests."""

from datetime import datetime

import pytest

from generate_allowlist import AddressFamily, Source, SourceRegistry
from tests.helpers import IPV4_URL, IPV6_URL

FIXED_TIME = datetime(2024, 1, 2, 3, 4, 5)


@pytest.fixture
def registry():
    """Two sources, one per family, and a single custom entry."""
    return SourceRegistry(
        sources=(
            Source(IPV4_URL, AddressFamily.IPV4),
            Source(IPV6_URL, AddressFamily.IPV6),
        ),
        custom_allow_list=("192.168.50.0/24",),
    )


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_TIME
