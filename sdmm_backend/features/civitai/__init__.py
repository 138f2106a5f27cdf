"""
Civitai feature - registry lookups and model enrichment.
"""
from .client import CivitaiClient
from .enricher import CivitaiEnricher, derive_tags

__all__ = ["CivitaiClient", "CivitaiEnricher", "derive_tags"]
