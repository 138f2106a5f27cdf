"""
Trash feature - soft delete and trash emptying.
"""
from .service import TrashService

__all__ = ["TrashService"]
