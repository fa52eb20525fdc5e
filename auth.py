import logging
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

import crud, errors, models, schemas
from database import SessionLocal
from sessions import SessionRecord, SessionStore

logger = logging.getLogger(__name__)

# Key inside the signed cookie session that holds the opaque session id.
SESSION_KEY = "sid"


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def register(db: Session, user: schemas.UserCreate) -> models.User:
    db_user = crud.create_user(db, user)
    logger.info(f"register: user_id={db_user.id}")
    return db_user


def login(db: Session, store: SessionStore, email: str, password: str) -> SessionRecord:
    user = crud.authenticate_user(db, email, password)
    if not user:
        logger.info(f"login_failed: email={crud.normalize_email(email)}")
        raise errors.InvalidCredentials()
    record = store.create(user.id)
    logger.info(f"login: user_id={user.id}")
    return record


def current_user(db: Session, store: SessionStore, session_id: Optional[str]) -> models.User:
    record = store.resolve(session_id)
    if record is None:
        raise errors.Unauthenticated()
    user = crud.get_user(db, record.user_id)
    if user is None:
        store.destroy(record.id)
        raise errors.Unauthenticated()
    return user


def logout(store: SessionStore, session_id: Optional[str]) -> None:
    record = store.resolve(session_id)
    store.destroy(session_id)
    if record is not None:
        logger.info(f"logout: user_id={record.user_id}")


def login_user(request: Request, db: Session, store: SessionStore, email: str, password: str) -> models.User:
    """Log in and bind the new session id to the request's cookie session."""
    record = login(db, store, email, password)
    # never carry a pre-login id over into the authenticated session
    store.destroy(request.session.get(SESSION_KEY))
    request.session.clear()
    request.session[SESSION_KEY] = record.id
    return crud.get_user(db, record.user_id)


def logout_user(request: Request, store: SessionStore) -> None:
    logout(store, request.session.get(SESSION_KEY))
    request.session.clear()


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
) -> models.User:
    """Resolve the acting user from the session cookie, or fail with 401."""
    try:
        return current_user(db, store, request.session.get(SESSION_KEY))
    except errors.Unauthenticated:
        request.session.clear()
        raise
