from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.core.problems import problem_response
from app.db.session import get_db_session
from app.models.user import User
from app.schemas.item_share import (
    CreateItemShareRequest,
    ItemShareListResponse,
    ItemShareResponse,
    ReShareRequest,
    SharedItemResponse,
    ShareInvitationResponse,
    UpdateSharedItemRequest,
    UpdateSharePermissionsRequest,
)
from app.services.email import EmailDeliveryError, EmailSender, build_email_sender
from app.services.item_share import (
    ItemShareConflictError,
    ItemShareForbiddenError,
    ItemShareNotFoundError,
    ItemShareValidationError,
    ItemShareView,
    ShareInvitationSent,
    create_item_share,
    get_item_share,
    list_owned_shares,
    list_received_shares,
    reshare_item,
    revoke_item_share,
    update_share_permissions,
    update_shared_item,
)


router = APIRouter(prefix="/api/v1/item-shares", tags=["item-shares"])


def get_email_sender() -> EmailSender:
    return build_email_sender()


def _request_context(request: Request) -> tuple[str, str]:
    client_ip = request.client.host if request.client and request.client.host else "0.0.0.0"
    return client_ip, request.headers.get("user-agent", "")


def _share_problem(exc: Exception) -> JSONResponse:
    if isinstance(exc, ItemShareNotFoundError):
        return problem_response(status=404, title="Not Found", detail=str(exc), slug="share-not-found")
    if isinstance(exc, ItemShareForbiddenError):
        return problem_response(status=403, title="Forbidden", detail=str(exc), slug="share-forbidden")
    if isinstance(exc, ItemShareValidationError):
        return problem_response(status=422, title="Unprocessable Entity", detail=str(exc), slug="share-invalid")
    if isinstance(exc, ItemShareConflictError):
        return problem_response(status=409, title="Conflict", detail=str(exc), slug="share-exists")
    if isinstance(exc, EmailDeliveryError):
        return problem_response(
            status=502,
            title="Bad Gateway",
            detail="Invitation email could not be delivered.",
            slug="email-delivery-failed",
        )
    raise exc


_SHARE_ERRORS = (
    ItemShareNotFoundError,
    ItemShareForbiddenError,
    ItemShareValidationError,
    ItemShareConflictError,
    EmailDeliveryError,
)


def _created_response(outcome: object) -> JSONResponse:
    if isinstance(outcome, ShareInvitationSent):
        body = ShareInvitationResponse(email=outcome.email)
        return JSONResponse(status_code=202, content=body.model_dump(mode="json"))
    view = ItemShareView(share=outcome, item=None, recipient_email=None, include_key=False, expired=False)
    body = ItemShareResponse.from_view(view)
    return JSONResponse(status_code=201, content=body.model_dump(mode="json", exclude_none=True))


@router.post(
    "",
    status_code=201,
    responses={202: {"model": ShareInvitationResponse}},
    response_model=ItemShareResponse,
)
async def create_item_share_endpoint(
    payload: CreateItemShareRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    email_sender: EmailSender = Depends(get_email_sender),
    db: AsyncSession = Depends(get_db_session),
) -> JSONResponse:
    client_ip, user_agent = _request_context(request)
    try:
        outcome = await create_item_share(
            db,
            current_user=current_user,
            payload=payload,
            email_sender=email_sender,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _SHARE_ERRORS as exc:
        return _share_problem(exc)
    return _created_response(outcome)


@router.get("/owned", response_model=ItemShareListResponse, response_model_exclude_none=True)
async def list_owned_shares_endpoint(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ItemShareListResponse:
    views = await list_owned_shares(db, current_user=current_user)
    return ItemShareListResponse(items=[ItemShareResponse.from_view(view) for view in views])


@router.get("/received", response_model=ItemShareListResponse, response_model_exclude_none=True)
async def list_received_shares_endpoint(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ItemShareListResponse:
    views = await list_received_shares(db, current_user=current_user)
    return ItemShareListResponse(items=[ItemShareResponse.from_view(view) for view in views])


@router.get("/{share_id}", response_model=ItemShareResponse, response_model_exclude_none=True)
async def get_item_share_endpoint(
    share_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ItemShareResponse:
    try:
        view = await get_item_share(db, current_user=current_user, share_id=share_id)
    except _SHARE_ERRORS as exc:
        return _share_problem(exc)
    return ItemShareResponse.from_view(view)


@router.patch("/{share_id}", response_model=ItemShareResponse, response_model_exclude_none=True)
async def update_share_permissions_endpoint(
    share_id: uuid.UUID,
    payload: UpdateSharePermissionsRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ItemShareResponse:
    client_ip, user_agent = _request_context(request)
    try:
        share = await update_share_permissions(
            db,
            current_user=current_user,
            share_id=share_id,
            payload=payload,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _SHARE_ERRORS as exc:
        return _share_problem(exc)
    return ItemShareResponse.from_view(
        ItemShareView(share=share, item=None, recipient_email=None, include_key=False, expired=False)
    )


@router.delete("/{share_id}", status_code=204)
async def revoke_item_share_endpoint(
    share_id: uuid.UUID,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> Response:
    client_ip, user_agent = _request_context(request)
    try:
        await revoke_item_share(
            db,
            current_user=current_user,
            share_id=share_id,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _SHARE_ERRORS as exc:
        return _share_problem(exc)
    return Response(status_code=204)


@router.post(
    "/{share_id}/reshare",
    status_code=201,
    responses={202: {"model": ShareInvitationResponse}},
    response_model=ItemShareResponse,
)
async def reshare_item_endpoint(
    share_id: uuid.UUID,
    payload: ReShareRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    email_sender: EmailSender = Depends(get_email_sender),
    db: AsyncSession = Depends(get_db_session),
) -> JSONResponse:
    client_ip, user_agent = _request_context(request)
    try:
        outcome = await reshare_item(
            db,
            current_user=current_user,
            share_id=share_id,
            payload=payload,
            email_sender=email_sender,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _SHARE_ERRORS as exc:
        return _share_problem(exc)
    return _created_response(outcome)


@router.put("/{share_id}/item", response_model=SharedItemResponse)
async def update_shared_item_endpoint(
    share_id: uuid.UUID,
    payload: UpdateSharedItemRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> SharedItemResponse:
    client_ip, user_agent = _request_context(request)
    try:
        item = await update_shared_item(
            db,
            current_user=current_user,
            share_id=share_id,
            payload=payload,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _SHARE_ERRORS as exc:
        return _share_problem(exc)
    return SharedItemResponse.from_item(item)
