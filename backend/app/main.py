from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .core.config import get_settings
from .db.database import engine
from .db import models
from .realtime.change_feed import feed
from .routes.auth_routes import router as auth_router
from .routes.chats import router as chats_router
from .routes.users import router as users_router
from .ws.sockets import ws_router
from .ws.ws_manager import manager

models.Base.metadata.create_all(bind=engine)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # identity loss for everyone still connected
    await manager.close_all()
    logger.info("Chat sessions closed on shutdown")


app = FastAPI(title="Campus Job Board Chat", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(auth_router)
app.include_router(chats_router)
app.include_router(users_router)
app.include_router(ws_router)


@app.get("/")
async def read_root():
    return {"message": "Campus job board chat service", "feed_open": not feed.closed}
