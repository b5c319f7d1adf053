"""Authentication service - password login and bearer sessions"""
import bcrypt
import logging
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from tickety_payments.core.errors import Conflict, Unauthenticated, ValidationFailed
from tickety_payments.core.metrics import login_attempts_counter
from tickety_payments.db.redis import delete_session, set_session
from tickety_payments.models.user import User

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash"""
    # Accounts provisioned without a password can never log in with one
    if not password_hash or not password:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def create_user(db: Session, email: str, password: Optional[str] = None, display_name: Optional[str] = None) -> User:
    """Create a new user

    Raises:
        Conflict: Email already registered
    """
    email = email.strip().lower()
    if db.query(User).filter(User.email == email).first():
        raise Conflict("Email already registered")
    if password is not None and len(password) < 8:
        raise ValidationFailed("Password must be at least 8 characters")

    user = User(
        email=email,
        display_name=display_name,
        password_hash=hash_password(password) if password else None,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {user.id}")
    return user


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Authenticate a user by email and password"""
    user = db.query(User).filter(User.email == email.strip().lower()).first()
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def create_session(user_id: int) -> str:
    """Issue a bearer token backed by a Redis session"""
    session_id = secrets.token_urlsafe(32)
    set_session(session_id, user_id)
    return session_id


def login_user(db: Session, email: str, password: str, client_identifier: str = "unknown") -> dict:
    """Check credentials and open a session

    Raises:
        Unauthenticated: Wrong email or password
    """
    user = authenticate_user(db, email, password)
    if not user:
        login_attempts_counter.labels(status="failure").inc()
        security_logger.warning(f"Failed login attempt from {client_identifier}")
        raise Unauthenticated("Invalid email or password")

    token = create_session(user.id)
    login_attempts_counter.labels(status="success").inc()
    logger.info(f"User {user.id} logged in")
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": {"id": user.id, "email": user.email, "display_name": user.display_name},
    }


def logout_user(session_id: str) -> None:
    delete_session(session_id)
