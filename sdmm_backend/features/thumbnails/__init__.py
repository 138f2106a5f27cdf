"""
Thumbnails feature - canonical still previews next to model files.
"""
from .pipeline import ThumbnailPipeline

__all__ = ["ThumbnailPipeline"]
