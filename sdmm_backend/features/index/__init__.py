"""
Index feature - walking, content identity, reconciliation.
"""
from .content_id import CONTENT_ID_LENGTH, compute_content_id, file_state
from .fs_walker import FileSystemWalker, WalkEntry
from .reconciler import CatalogReconciler
from .service import IndexService

__all__ = [
    "CONTENT_ID_LENGTH",
    "compute_content_id",
    "file_state",
    "FileSystemWalker",
    "WalkEntry",
    "CatalogReconciler",
    "IndexService",
]
