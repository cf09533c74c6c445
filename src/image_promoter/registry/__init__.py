"""Registry-facing layer.

Only the models and contracts are re-exported here. Implementations
(``http``, ``memory``, ``scanner``, ``credentials``) and the file formats
(``manifests``, ``snapshot``) are imported from their modules directly.
"""

from image_promoter.registry.contracts import (
    CopyMode,
    CredentialActivator,
    InventoryReader,
    TransferExecutor,
    VulnerabilityScanner,
)
from image_promoter.registry.models import (
    Digest,
    ImageEntry,
    ImageName,
    Manifest,
    RegistryContext,
    RegistryInventory,
    RegistryName,
    ScanReport,
    Severity,
    Tag,
    Vulnerability,
)

__all__ = [
    "CopyMode",
    "CredentialActivator",
    "Digest",
    "ImageEntry",
    "ImageName",
    "InventoryReader",
    "Manifest",
    "RegistryContext",
    "RegistryInventory",
    "RegistryName",
    "ScanReport",
    "Severity",
    "Tag",
    "TransferExecutor",
    "Vulnerability",
    "VulnerabilityScanner",
]
