from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from ..core import security as auth
from ..controllers import users_controller
from ..db import models, schemas
from .db import get_db


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def user_from_token(db: Session, token: str):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    payload = auth.decode_access_token(token)
    if payload is None:
        raise credentials_exception
    username = payload.get("sub")
    if username is None:
        raise credentials_exception
    user = users_controller.get_user_by_username(db, username=username)
    if user is None:
        raise credentials_exception
    return user


async def get_current_user(
    db: Session = Depends(get_db), token: str = Depends(oauth2_scheme)
):
    return user_from_token(db, token)


def identity_for(user: models.User) -> schemas.Identity:
    return schemas.Identity(id=user.id, role=user.role)


async def get_identity(current_user: models.User = Depends(get_current_user)) -> schemas.Identity:
    return identity_for(current_user)
