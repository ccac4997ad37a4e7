from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from fastapi.security import OAuth2PasswordRequestForm

from ..db import models, schemas
from ..deps.db import get_db
from ..deps.auth import get_current_user
from ..controllers import auth_controller

router = APIRouter()


@router.post("/auth/register", response_model=schemas.Token)
def register_user(body: schemas.RegisterIn, db: Session = Depends(get_db)):
    return auth_controller.register_user(db, body)


@router.post("/token", response_model=schemas.Token)
def login_for_access_token(db: Session = Depends(get_db), form_data: OAuth2PasswordRequestForm = Depends()):
    return auth_controller.login(db, form_data.username, form_data.password)


@router.post("/auth/logout")
async def logout(current_user: models.User = Depends(get_current_user)):
    closed = await auth_controller.logout(current_user.id)
    return {"ok": True, "closed_sessions": closed}
