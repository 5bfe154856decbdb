"""Sign-in endpoints."""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from stryp.security import check_origin, create_access_token, get_current_user
from stryp.services.documents import document_store

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    provider_uid: str
    display_name: str = ""
    email: str = ""


@router.post("/login")
def login(body: LoginRequest, request: Request):
    """Exchange an identity-provider account for an API token."""
    check_origin(request.headers.get("origin"))
    user = document_store.upsert_user(body.provider_uid, body.display_name, body.email)
    return {
        "access_token": create_access_token(user["id"]),
        "token_type": "bearer",
        "user": user,
    }


@router.get("/me")
def me(user_id: str = Depends(get_current_user)):
    return {"id": user_id}
