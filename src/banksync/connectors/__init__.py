"""Institution connectors.

Importing this package registers the bundled adapters.
"""

from . import amex, bom  # noqa: F401
from .base import (
    AccountDescriptor,
    BankConnector,
    BankCredentials,
    DateWindow,
    ExportArtifact,
)
from .registry import (
    available_institutions,
    create_connector,
    get_connector_class,
    register_connector,
    unregister_connector,
)

__all__ = [
    "AccountDescriptor",
    "BankConnector",
    "BankCredentials",
    "DateWindow",
    "ExportArtifact",
    "available_institutions",
    "create_connector",
    "get_connector_class",
    "register_connector",
    "unregister_connector",
]
