"""
FastAPI dependencies that hand out the application's DataLayer components.
"""
from fastapi import Depends, Request

from repositories.robot_repository import RobotRepository
from services.data_layer import DataLayer
from utils.exceptions import PoolClosedError


def get_data_layer(request: Request) -> DataLayer:
    data_layer = getattr(request.app.state, "data_layer", None)
    if data_layer is None:
        raise PoolClosedError("Data layer is not initialized")
    return data_layer


def get_robot_repository(data_layer: DataLayer = Depends(get_data_layer)) -> RobotRepository:
    return data_layer.robots
