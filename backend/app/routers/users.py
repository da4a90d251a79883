from fastapi import APIRouter, Depends

from .. import models, schemas
from ..dependencies import current_user_dep

router = APIRouter(prefix="/v1/users", tags=["users"])


def user_response(user: models.User) -> schemas.UserResponse:
    return schemas.UserResponse(
        id=user.id,
        email=user.email,
        credits=user.credits,
        plan_key=user.plan_key,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


@router.get("/me", response_model=schemas.UserResponse)
def get_me(user: models.User = Depends(current_user_dep)):
    return user_response(user)
