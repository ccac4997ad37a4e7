from sqlalchemy.orm import Session
from typing import List, Optional

from ..db import models, schemas
from ..core.security import get_password_hash


def get_user(db: Session, user_id: str):
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_username(db: Session, username: str):
    return db.query(models.User).filter(models.User.username == username).first()


def create_user(db: Session, user: schemas.UserCreate):
    db_user = models.User(
        username=user.username,
        password_hash=get_password_hash(user.password),
        role=user.role,
        display_name=user.display_name,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def list_contacts(db: Session, current_user: models.User, q: Optional[str] = None) -> List[schemas.ContactOut]:
    """Recruiters for a student, students for a recruiter."""
    wanted = "recruiter" if current_user.role == "student" else "student"
    users = db.query(models.User).filter(models.User.role == wanted).order_by(models.User.username.asc()).all()
    contacts = [
        schemas.ContactOut(id=u.id, name=u.display_name or u.username, role=u.role)
        for u in users
        if u.id != current_user.id
    ]
    if q and q.strip():
        needle = q.strip().lower()
        contacts = [c for c in contacts if needle in c.name.lower()]
    return contacts
