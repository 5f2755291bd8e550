"""
FastAPI dependencies resolving the per-app service container
"""
from fastapi import Request

from pilot.services.service_container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
