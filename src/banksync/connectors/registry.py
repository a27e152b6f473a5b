"""Slug-keyed registry of institution connectors."""

import logging

from banksync.config import BankSyncSettings, get_settings
from banksync.errors import UnknownInstitutionError
from banksync.models import Institution

from .base import BankConnector

logger = logging.getLogger(__name__)

_CONNECTORS: dict[str, type[BankConnector]] = {}


def register_connector(cls: type[BankConnector]) -> type[BankConnector]:
    """Class decorator adding a connector under its ``slug``."""
    existing = _CONNECTORS.get(cls.slug)
    if existing is not None and existing is not cls:
        raise ValueError(f"Connector slug '{cls.slug}' is already registered")
    _CONNECTORS[cls.slug] = cls
    logger.debug(f"Registered connector {cls.slug}")
    return cls


def unregister_connector(slug: str) -> None:
    """Remove a connector from the registry."""
    _CONNECTORS.pop(slug, None)


def get_connector_class(slug: str) -> type[BankConnector]:
    """Look up the connector class for an institution.

    Raises:
        UnknownInstitutionError: If no connector has the slug
    """
    try:
        return _CONNECTORS[slug]
    except KeyError:
        raise UnknownInstitutionError(
            f"No connector registered for institution '{slug}'"
        ) from None


def create_connector(
    slug: str, settings: BankSyncSettings | None = None
) -> BankConnector:
    """Instantiate the connector for an institution."""
    return get_connector_class(slug)(settings or get_settings())


def available_institutions() -> list[Institution]:
    """Describe every registered connector, ordered by slug."""
    return [
        Institution(
            slug=cls.slug,
            name=cls.display_name,
            description=cls.description,
            requires_security_number=cls.requires_security_number,
        )
        for _, cls in sorted(_CONNECTORS.items())
    ]
