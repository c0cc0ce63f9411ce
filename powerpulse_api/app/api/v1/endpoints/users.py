"""
User endpoints for API v1.

Registration, login and the caller's own account.  Registering also
sets up default notification preferences and a delivery schedule, and
queues the welcome email.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from powerpulse_api.app.core.security import create_access_token, get_current_user
from powerpulse_api.app.schemas.user import TokenResponse, UserCreate, UserLogin, UserRead
from powerpulse_api.app.services.user_service import UserService


router = APIRouter()


@router.post("/", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def register_user(user: UserCreate) -> UserRead:
    """Register a new user.

    ``timezone`` and ``preferred_delivery_time`` set up the daily
    delivery schedule; the configured defaults are used when omitted.
    """
    try:
        return await UserService.create_user(user)
    except ValueError as exc:
        message = str(exc)
        if "already exists" in message:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=message)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=message)


@router.post("/login", response_model=TokenResponse)
async def login_user(credentials: UserLogin) -> TokenResponse:
    db_user = await UserService.authenticate(credentials.email, credentials.password)
    if not db_user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return TokenResponse(access_token=create_access_token({"sub": db_user.email}))


@router.get("/me", response_model=UserRead)
async def read_me(current_user: dict = Depends(get_current_user)) -> UserRead:
    try:
        return await UserService.get_user(current_user["user_id"])
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
async def delete_me(current_user: dict = Depends(get_current_user)) -> None:
    """Delete the caller's account.

    The account is soft-deleted: delivery schedules are switched off and
    the token stops working, but delivery history is kept.
    """
    try:
        await UserService.soft_delete(current_user["user_id"])
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
