"""
Modular route system for SD Models Manager.
Importing this package is side-effect free; route registration is explicit.
"""
from .registry import API_PREFIX, register_all_routes, register_routes, register_static_roots

__all__ = [
    "API_PREFIX",
    "register_routes",
    "register_all_routes",
    "register_static_roots",
]
