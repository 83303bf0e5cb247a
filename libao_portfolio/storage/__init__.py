"""Storage Layer.

JSON export/import of portfolio snapshots in the persisted camelCase shape.
"""

from libao_portfolio.storage.snapshot import (
    dumps_snapshot,
    export_filename,
    export_snapshot,
    import_snapshot,
    loads_snapshot,
    snapshot_from_dict,
    snapshot_to_dict,
)

__all__ = [
    "snapshot_to_dict",
    "snapshot_from_dict",
    "dumps_snapshot",
    "loads_snapshot",
    "export_filename",
    "export_snapshot",
    "import_snapshot",
]
