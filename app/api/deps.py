from fastapi import Request
from app.platform.ports.object_storage import ObjectStoragePort
from app.platform.ports.event_bus import EventBusPort

# the application factory puts its collaborators on app.state

async def get_session(request: Request):
    async with request.app.state.session_factory() as session:
        yield session

def get_storage(request: Request) -> ObjectStoragePort:
    return request.app.state.storage

def get_event_bus(request: Request) -> EventBusPort:
    return request.app.state.event_bus

def get_worker(request: Request):
    return request.app.state.worker
