# tests/conftest.py
"""Shared fixtures and Hypothesis profiles.

Hypothesis profiles:
    HYPOTHESIS_PROFILE=ci pytest          # default, 100 examples
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
    HYPOTHESIS_PROFILE=debug pytest tests/property/ -x
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
from hypothesis import Phase, Verbosity, settings

from entitygate.core.catalog import EntityCatalog, build_catalog
from entitygate.core.config import GatewaySettings
from tests.fixtures.catalogs import PRODUCT_ROWS, SHOP_DOCUMENT
from tests.fixtures.gateway import Gateway

# =============================================================================
# Hypothesis Profiles
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Catalog and Gateway Fixtures
# =============================================================================


@pytest.fixture
def shop_catalog() -> EntityCatalog:
    return build_catalog(SHOP_DOCUMENT)


@pytest.fixture
def gateway_settings() -> GatewaySettings:
    return GatewaySettings(timeout_seconds=5.0)


@pytest.fixture
def gateway(shop_catalog: EntityCatalog, gateway_settings: GatewaySettings) -> Iterator[Gateway]:
    """Shop gateway on in-memory SQLite with Products seeded."""
    gw = Gateway.build(shop_catalog, gateway_settings)
    gw.seed("CatalogService.Products", PRODUCT_ROWS)
    yield gw
    gw.close()
