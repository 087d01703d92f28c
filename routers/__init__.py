"""
API endpoints and request handling.
Can import from: services, repositories, models
"""

from . import monitoring, robots

__all__ = [
    "monitoring",
    "robots",
]
