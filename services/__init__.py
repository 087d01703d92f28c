"""
Application services.
Can import from: repositories, models, utils, caching, monitoring
Must NOT import from: routers
"""

from .data_layer import DataLayer

__all__ = [
    "DataLayer",
]
