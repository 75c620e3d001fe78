"""
station/dependencies.py

FastAPI dependencies resolving the service objects built in the lifespan.
"""

from fastapi import Request

from station.services.device_api import DeviceApi
from station.services.presence import PresenceTracker
from station.services.request_gateway import RequestGateway
from station.services.scheduler import ScheduleEngine


def get_tracker(request: Request) -> PresenceTracker:
    return request.app.state.tracker


def get_engine(request: Request) -> ScheduleEngine:
    return request.app.state.engine


def get_gateway(request: Request) -> RequestGateway:
    return request.app.state.gateway


def get_device_api(request: Request) -> DeviceApi:
    return request.app.state.device_api
