"""
ACME account endpoints.
"""

import logging

from fastapi import APIRouter, HTTPException

from core.acme_service import ACMEError
from core.acme_user_service import get_acme_user_service
from models.acme_user import ACMEUserCreate, ACMEUserResponse, ACMEUserUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/acme-users", tags=["ACME Accounts"])


@router.get(
    "/",
    response_model=list[ACMEUserResponse],
    summary="List ACME Accounts",
    description="List ACME accounts with their CA directory and registration state. Keys are never returned.",
)
async def list_acme_users() -> list[ACMEUserResponse]:
    users = await get_acme_user_service().list_users()
    return [ACMEUserResponse.from_user(user) for user in users]


@router.post(
    "/",
    response_model=ACMEUserResponse,
    status_code=201,
    summary="Create ACME Account",
    description="""
    Create an ACME account with a new P-256 key.

    The account is registered with its CA on first use, on
    `POST /acme-users/{id}/register`, or at startup when
    `register_on_startup` is set. An empty `ca_dir` uses the configured
    directory (staging or production).
    """,
)
async def create_acme_user(data: ACMEUserCreate) -> ACMEUserResponse:
    user = await get_acme_user_service().create(data)
    return ACMEUserResponse.from_user(user)


def _not_found(user_id: int) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={
            "error": "acme_user_not_found",
            "message": f"ACME user {user_id} not found",
            "suggestion": "Use GET /acme-users/ to list accounts",
        },
    )


@router.put(
    "/{user_id}",
    response_model=ACMEUserResponse,
    summary="Update ACME Account",
    description="""
    Update an account. Omitted fields keep their value.

    Changing `email` or `ca_dir` marks the account unregistered; it is
    registered again on its next certificate operation or on
    `POST /acme-users/{id}/register`. The account key is kept.
    """,
    responses={404: {"description": "Account not found"}},
)
async def update_acme_user(user_id: int, data: ACMEUserUpdate) -> ACMEUserResponse:
    service = get_acme_user_service()
    user = await service.get(user_id)
    if user is None:
        raise _not_found(user_id)
    user = await service.update(user, data)
    return ACMEUserResponse.from_user(user)


@router.post(
    "/{user_id}/register",
    response_model=ACMEUserResponse,
    summary="Register ACME Account",
    description="Register (or re-register) the account with its CA and store the registration.",
    responses={404: {"description": "Account not found"}, 502: {"description": "CA rejected the registration"}},
)
async def register_acme_user(user_id: int) -> ACMEUserResponse:
    service = get_acme_user_service()
    user = await service.get(user_id)
    if user is None:
        raise _not_found(user_id)

    try:
        user = await service.register(user)
    except ACMEError as e:
        raise HTTPException(
            status_code=502,
            detail={"error": "registration_failed", "message": e.message, "suggestion": e.suggestion},
        )
    return ACMEUserResponse.from_user(user)
