from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional

from ..db import models, schemas
from ..controllers import users_controller
from ..deps.db import get_db
from ..deps.auth import get_current_user

router = APIRouter()


@router.get("/users/me/", response_model=schemas.UserOut)
async def read_users_me(current_user: models.User = Depends(get_current_user)):
  return current_user


@router.get("/users/contacts", response_model=List[schemas.ContactOut])
def get_contacts(q: Optional[str] = None, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
  return users_controller.list_contacts(db, current_user, q)
