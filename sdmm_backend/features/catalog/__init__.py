"""
Catalog feature - roots, items and search over the persisted index.
"""
from .items import ItemStore
from .roots import RootStore
from .searcher import CatalogSearcher

__all__ = ["ItemStore", "RootStore", "CatalogSearcher"]
