"""Snapshot serialization.

Renders a ``RegistryInventory`` in one of two formats:

- ``yaml``: a list of ``{name, dmap}`` entries, re-parseable with
  ``manifests.parse_images`` (round-trip with manifest input)
- ``csv``: one ``name,digest,tag`` row per pairing; untagged digests get
  an empty tag column

Output is sorted by image, digest and tag, so two snapshots of the same
registry state are byte-identical.
"""

from __future__ import annotations

import csv
import io

import yaml

from image_promoter.core.errors import ValidationError
from image_promoter.core.settings import OUTPUT_FORMATS
from image_promoter.registry.models import RegistryInventory


def to_yaml(inventory: RegistryInventory) -> str:
    rows = [
        {
            "name": name,
            "dmap": {digest: sorted(dmap[digest]) for digest in sorted(dmap)},
        }
        for name, dmap in sorted(inventory.images.items())
    ]
    if not rows:
        return "[]\n"
    return yaml.safe_dump(rows, default_flow_style=False, sort_keys=False)


def to_csv(inventory: RegistryInventory) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["name", "digest", "tag"])
    for name, dmap in sorted(inventory.images.items()):
        for digest in sorted(dmap):
            tags = sorted(dmap[digest]) or [""]
            for tag in tags:
                writer.writerow([name, digest, tag])
    return buf.getvalue()


def render_snapshot(inventory: RegistryInventory, fmt: str) -> str:
    """Serialize ``inventory`` as ``csv`` or ``yaml``.

    Raises:
        ValidationError: Unknown format
    """
    match fmt.lower():
        case "yaml":
            return to_yaml(inventory)
        case "csv":
            return to_csv(inventory)
    raise ValidationError(
        f"output format {fmt!r} is not one of {', '.join(OUTPUT_FORMATS)}",
        field="output_format",
    )
