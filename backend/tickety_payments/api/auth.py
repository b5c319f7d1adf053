"""Auth API routes"""
import logging
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from tickety_payments.core.security import get_bearer_token, get_client_identifier, require_auth
from tickety_payments.db.session import get_db
from tickety_payments.schemas.auth import LoginRequest, RegisterRequest
from tickety_payments.services.auth_service import create_user, login_user, logout_user
from tickety_payments.services.ticket_service import get_user

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/register")
def register(request_data: RegisterRequest, db: Session = Depends(get_db)):
    """Create an account"""
    user = create_user(db, request_data.email, request_data.password, request_data.display_name)
    return {"user": {"id": user.id, "email": user.email, "display_name": user.display_name}}


@router.post("/login")
def login(request_data: LoginRequest, request: Request, db: Session = Depends(get_db)):
    """Exchange email and password for a bearer token"""
    return login_user(db, request_data.email, request_data.password, get_client_identifier(request))


@router.post("/logout")
def logout(request: Request):
    """Invalidate the caller's bearer token"""
    token = get_bearer_token(request)
    if token:
        logout_user(token)
    return {"message": "Logged out"}


@router.get("/me")
def me(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    user = get_user(db, user_id)
    return {"user": {"id": user.id, "email": user.email, "display_name": user.display_name}}
