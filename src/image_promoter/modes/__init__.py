"""Mode drivers: promote, security scan, snapshot, manifest-list checks."""

from image_promoter.modes.manifest_lists import ManifestListReport
from image_promoter.modes.promoter import Promoter
from image_promoter.modes.scan import SecurityScanReport

__all__ = ["ManifestListReport", "Promoter", "SecurityScanReport"]
