"""FastAPI dependencies. Tests override get_services."""
from fastapi import Depends, Request

from cpdtracker.db.store import LocalStore
from cpdtracker.services import Services
from cpdtracker.sync.engine import SyncEngine


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_store(services: Services = Depends(get_services)) -> LocalStore:
    return services.store


def get_sync_engine(services: Services = Depends(get_services)) -> SyncEngine:
    return services.sync_engine
