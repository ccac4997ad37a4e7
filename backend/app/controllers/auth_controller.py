import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ..core import security as auth
from ..db import schemas
from ..ws.ws_manager import manager
from .users_controller import get_user_by_username, create_user

logger = logging.getLogger(__name__)


def register_user(db: Session, body: schemas.RegisterIn):
    if not all([body.username.strip(), body.password.strip()]):
        raise HTTPException(status_code=400, detail="Username and password are required")
    if get_user_by_username(db, body.username):
        raise HTTPException(status_code=400, detail="Username already exists")
    user = create_user(db, body)
    logger.info(f"Registered user_id={user.id} role={user.role}")
    token = auth.create_access_token({"sub": user.username})
    return {"access_token": token, "token_type": "bearer"}


def login(db: Session, username: str, password: str):
    user = get_user_by_username(db, username)
    if not user or not auth.verify_password(password, user.password_hash):
        raise HTTPException(status_code=401, detail="Incorrect username or password", headers={"WWW-Authenticate": "Bearer"})
    token = auth.create_access_token({"sub": user.username})
    return {"access_token": token, "token_type": "bearer"}


async def logout(user_id: str) -> int:
    closed = await manager.close_user_sessions(user_id)
    logger.info(f"Logout user_id={user_id} closed_sessions={closed}")
    return closed
