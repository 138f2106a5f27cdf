"""
Tags feature - item/tag associations and implied tags.
"""
from .graph import TagGraph, normalize_tag, normalize_tags

__all__ = ["TagGraph", "normalize_tag", "normalize_tags"]
