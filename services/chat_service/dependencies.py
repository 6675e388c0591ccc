from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from auth import get_current_user_id
from crud import get_user
from database import get_db
from notifications import NotificationDispatcher
from realtime import Broadcaster
from service import ChatService
from storage import ObjectStore

http_bearer = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(http_bearer),
    db: Session = Depends(get_db),
):
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = get_user(db, get_current_user_id(credentials.credentials))
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


def get_object_store(request: Request) -> ObjectStore:
    return request.app.state.object_store


def get_broadcaster(request: Request) -> Broadcaster:
    return request.app.state.broadcaster


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_chat_service(
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> ChatService:
    return ChatService(db, store, broadcaster)
