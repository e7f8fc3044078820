import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import LOCALHOST_ORIGIN_REGEX, settings
from database import database_status, ensure_indexes
from responses import install_error_handlers
from routes import api_router
from routes.site_settings import seed_settings
from security import bootstrap_admin

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("rest")


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes()
    seed_settings()
    admin_id = bootstrap_admin()
    if admin_id:
        logger.info("Admin account ready: %s", admin_id)
    yield


# App and CORS
app = FastAPI(title="R.E.S.T Membership API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_origin_regex=LOCALHOST_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-admin-frontend"],
)
install_error_handlers(app)

if settings.storage_backend == "local":
    Path(settings.uploads_dir).mkdir(parents=True, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=settings.uploads_dir, check_dir=False), name="uploads")

app.include_router(api_router)


@app.get("/")
def read_root():
    return {"message": "R.E.S.T Membership API running"}


@app.get("/test")
def test_database():
    return database_status()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
