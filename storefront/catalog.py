# Storefront Package Mapping
# ==========================
#
# Maps Stripe price ids (the SKUs sold on the storefront) to eSIMAccess
# location and package codes. The table is append-only: entries loaded from
# PACKAGE_MAP_PATH can add SKUs but never replace a built-in one.
#
# Unknown SKUs resolve to the configured default package instead of failing.

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .config import MappingConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackageMapping:
    location_code: str
    package_code: str


def _plans(location: str, *packages: str) -> Dict[str, PackageMapping]:
    """Build entries keyed price_<cc>_<size>_prod for one country."""
    prefix = location.lower() if location != "GB" else "uk"
    entries = {}
    for package in packages:
        size = package.split("_")[1].lower()
        if size == "ul":
            size = "unlimited"
        entries[f"price_{prefix}_{size}_prod"] = PackageMapping(location, package)
    return entries


PACKAGE_MAP: Dict[str, PackageMapping] = {
    **_plans("US", "US_5GB_30D", "US_10GB_30D"),
    "price_1SqhSYCPrRzENMHl0tebNgtr": PackageMapping("US", "PKY3WHPRZ"),
    **_plans("GB", "GB_3GB_30D", "GB_10GB_30D", "GB_UL_30D"),
    **_plans("FR", "FR_5GB_30D", "FR_15GB_30D", "FR_UL_30D"),
    **_plans("DE", "DE_5GB_30D", "DE_15GB_30D", "DE_UL_30D"),
    **_plans("ES", "ES_5GB_30D", "ES_15GB_30D", "ES_UL_30D"),
    **_plans("IT", "IT_5GB_30D", "IT_15GB_30D", "IT_UL_30D"),
    **_plans("CA", "CA_5GB_30D", "CA_15GB_30D", "CA_UL_30D"),
    **_plans("JP", "JP_3GB_30D", "JP_10GB_30D", "JP_UL_30D"),
    **_plans("AU", "AU_5GB_30D", "AU_15GB_30D", "AU_UL_30D"),
    **_plans("KR", "KR_5GB_30D", "KR_15GB_30D", "KR_UL_30D"),
    **_plans("IE", "IE_5GB_30D", "IE_15GB_30D", "IE_UL_30D"),
    **_plans("MX", "MX_5GB_30D", "MX_10GB_30D", "MX_UL_30D"),
}


class PackageTable:
    """
    Read-only (at request time) lookup from SKU id to carrier package.

    resolve() always returns a mapping: unmapped SKUs fall back to the
    default entry.
    """

    def __init__(
        self,
        entries: Optional[Mapping[str, PackageMapping]] = None,
        default: PackageMapping = PackageMapping("US", "US_5GB_30D"),
    ):
        self._entries: Dict[str, PackageMapping] = dict(entries or {})
        self.default = default

    def resolve(self, sku_id: Optional[str]) -> PackageMapping:
        if not sku_id:
            return self.default
        mapping = self._entries.get(sku_id.strip())
        if mapping is None:
            logger.warning(
                f"Unmapped SKU {sku_id!r}, falling back to {self.default.package_code}",
                extra={"sku": sku_id},
            )
            return self.default
        return mapping

    def is_mapped(self, sku_id: Optional[str]) -> bool:
        return bool(sku_id) and sku_id.strip() in self._entries

    def extend(self, entries: Mapping[str, PackageMapping]) -> int:
        """Add new SKUs. Existing keys are kept. Returns the number added."""
        added = 0
        for sku_id, mapping in entries.items():
            existing = self._entries.get(sku_id)
            if existing is not None:
                if existing != mapping:
                    logger.warning(
                        f"Ignoring remap of {sku_id}: keeping {existing.package_code}, "
                        f"got {mapping.package_code}",
                        extra={"sku": sku_id},
                    )
                continue
            self._entries[sku_id] = mapping
            added += 1
        return added

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, sku_id: object) -> bool:
        return sku_id in self._entries


def _load_entries_from_json(path: str) -> Dict[str, PackageMapping]:
    """Load {sku: {"location": ..., "package": ...}} from a JSON file."""
    map_file = Path(path)
    if not map_file.exists():
        raise FileNotFoundError(f"Package map not found: {map_file}")

    with open(map_file) as f:
        data = json.load(f)

    entries: Dict[str, PackageMapping] = {}
    for sku_id, value in data.items():
        location = value.get("location") or value.get("locationCode")
        package = value.get("package") or value.get("packageCode")
        if not location or not package:
            raise ValueError(f"Package map entry for {sku_id} needs location and package")
        entries[sku_id] = PackageMapping(location, package)
    return entries


def load_package_table(mapping: Optional[MappingConfig] = None) -> PackageTable:
    """Built-in table plus the optional JSON extension file."""
    mapping = mapping or MappingConfig()
    table = PackageTable(
        PACKAGE_MAP,
        default=PackageMapping(mapping.default_location, mapping.default_package),
    )
    if mapping.extra_map_path:
        added = table.extend(_load_entries_from_json(mapping.extra_map_path))
        logger.info(f"Loaded {added} extra package mapping(s) from {mapping.extra_map_path}")
    return table


def skus_from_metadata(metadata: Optional[Mapping[str, str]]) -> List[str]:
    """Split the plan_ids checkout metadata field into SKU ids, in cart order."""
    if not metadata:
        return []
    raw = metadata.get("plan_ids") or ""
    return [sku.strip() for sku in raw.split(",") if sku.strip()]
