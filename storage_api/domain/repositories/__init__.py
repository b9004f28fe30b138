from .object_repository import PartProgress, PartRecord, StorageObjectRepository

__all__ = [
    "PartProgress",
    "PartRecord",
    "StorageObjectRepository",
]
