# app/routes/auth.py
# Sessions are issued by the authentication provider; this API only verifies them.

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import UnauthorizedError
from app.core.logging_config import get_logger
from app.core.response import success_response, ResponseModel
from app.core.security import verify_token
from app.db.deps import get_db
from app.models.user import User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token", auto_error=False)


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not token:
        raise UnauthorizedError("Not authenticated")
    try:
        user_id = verify_token(token)
    except JWTError as e:
        logger.info(f"Rejected session token: {e}")
        raise UnauthorizedError("Could not validate credentials")
    if user_id is None:
        raise UnauthorizedError("Could not validate credentials")

    user = await db.get(User, user_id)
    if user is None:
        raise UnauthorizedError("Could not validate credentials")
    return user


@router.get("/me", response_model=ResponseModel)
async def read_current_user(current_user: User = Depends(get_current_user)):
    return success_response(
        msg="Authenticated",
        data={"id": current_user.id, "email": current_user.email, "name": current_user.name},
    )
