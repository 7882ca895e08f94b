from fastapi import APIRouter

from app.api.conversations import router as conversations_router
from app.api.notifications import router as notifications_router
from app.api.private import router as private_router
from app.api.projects import router as projects_router
from app.api.stream import router as stream_router
from app.api.system_messages import router as system_messages_router

router = APIRouter()

router.include_router(notifications_router)
router.include_router(system_messages_router)
router.include_router(projects_router)
router.include_router(private_router)
router.include_router(conversations_router)
router.include_router(stream_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Relay API"}
