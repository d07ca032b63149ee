"""
Owner Authentication Router

POST /auth/register - Create a campaign owner account
POST /auth/login - Login with email + password
GET /auth/me - Get current user info from JWT token
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.orm import Session

from api.dependencies import get_current_user
from database.db import get_db
from database.models import User
from services.auth_service import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    authenticate_user,
    create_access_token,
    hash_password,
)

router = APIRouter(prefix="/auth", tags=["Authentication"])
logger = logging.getLogger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    full_name: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def digits_only(cls, value):
        """Store phone numbers as digits only, e.g. 254712345678."""
        if value is None:
            return value
        digits = "".join(ch for ch in value if ch.isdigit())
        return digits or None

    class Config:
        json_schema_extra = {
            "example": {
                "email": "jane@example.com",
                "password": "a-long-password",
                "full_name": "Jane Wanjiru",
                "phone": "+254 712 345 678"
            }
        }


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserInfoResponse(BaseModel):
    """Current user information"""
    id: int
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LoginResponse(BaseModel):
    """Login response with JWT token and user info"""
    access_token: str
    token_type: str = "bearer"
    expires_in: int = ACCESS_TOKEN_EXPIRE_MINUTES * 60
    user: UserInfoResponse


def _token_response(user: User) -> LoginResponse:
    token = create_access_token({"user_id": user.id, "email": user.email})
    return LoginResponse(access_token=token, user=UserInfoResponse.model_validate(user))


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/register", response_model=LoginResponse, status_code=201)
def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """
    Create an owner account and return a token for it.

    **Error Cases:**
    - 409: Email already registered
    """
    email = request.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered"
        )

    user = User(
        email=email,
        password_hash=hash_password(request.password),
        full_name=request.full_name,
        phone=request.phone,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"Auth: Registered user {user.id}")
    return _token_response(user)


@router.post("/login", response_model=LoginResponse)
def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Login with email and password.

    **Error Cases:**
    - 401: Unknown email, wrong password or inactive account
    """
    user = authenticate_user(db, request.email, request.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    return _token_response(user)


@router.get("/me", response_model=UserInfoResponse)
def get_me(current_user: User = Depends(get_current_user)):
    """Get current user information from JWT token."""
    return current_user
