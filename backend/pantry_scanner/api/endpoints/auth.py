from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from datetime import timedelta

from pantry_scanner.core.database import get_db
from pantry_scanner.core.security import verify_password, create_access_token, get_current_user
from pantry_scanner.core.config import settings
from pantry_scanner.models.user import User
from pantry_scanner.schemas.user import Token, UserWithHousehold

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    """Login and get access token"""
    user = db.query(User).filter(User.email == form_data.username).first()
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled"
        )

    access_token = create_access_token(
        data={
            "sub": str(user.id),
            "household_id": user.household_id
        },
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return Token(access_token=access_token)


@router.get("/me", response_model=UserWithHousehold)
def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current user info including household name"""
    response = UserWithHousehold.model_validate(current_user)
    if current_user.household:
        response.household_name = current_user.household.name
    return response
