from fastapi import APIRouter

from routes import branches, carousel, committee, content, events, gallery, site_settings, users

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(users.router)
api_router.include_router(events.router)
api_router.include_router(gallery.router)
api_router.include_router(committee.router)
api_router.include_router(branches.router)
api_router.include_router(carousel.router)
api_router.include_router(content.router)
api_router.include_router(site_settings.router)
