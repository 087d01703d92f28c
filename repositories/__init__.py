"""
Database interactions through the query optimizer.
Can import from: models, utils, caching, monitoring
Must NOT import from: services, routers
"""

from .robot_repository import RobotRepository

__all__ = [
    "RobotRepository",
]
