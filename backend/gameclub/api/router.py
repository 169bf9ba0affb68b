from fastapi import APIRouter

from gameclub.api.routes.auth import router as auth_router
from gameclub.api.routes.me import router as me_router

router = APIRouter()

router.include_router(auth_router)
router.include_router(me_router)
