from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request
from pydantic import BaseModel

from citizenauth.api.schemas import (
    AccountResponse,
    AccountStatusRequest,
    AdminPasswordResetRequest,
    Envelope,
    LoginAttemptListResponse,
    LoginAttemptResponse,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResultResponse,
    PermissionsResponse,
    PrincipalResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from citizenauth.logging import get_logger
from citizenauth.service.auth import LoginResult, Principal
from citizenauth.service.context import OperationContext
from citizenauth.service.passwords import PasswordResult
from citizenauth.service.permissions import require_permissions
from citizenauth.service.runtime import get_runtime
from citizenauth.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])

PERM_RESET_PASSWORD = "usuarios.usuarios.reset_password"
PERM_CHANGE_STATUS = "usuarios.usuarios.cambiar_estado"
PERM_VIEW_ACCOUNTS = "usuarios.usuarios.ver"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def _operation_context(request: Request, actor_id: Optional[str] = None) -> OperationContext:
    return OperationContext(
        actor_id=actor_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _token_response(result: LoginResult) -> TokenResponse:
    response = TokenResponse(
        account_id=result.account.id,
        roles=list(result.roles),
        permissions=sorted(result.permissions),
        password_change_required=result.password_change_required,
        password_change_token=result.password_change_token,
        password_change_expires_at=result.password_change_expires_at,
    )
    if result.tokens is not None:
        response.access_token = result.tokens.access_token
        response.refresh_token = result.tokens.refresh_token
        response.token_type = result.tokens.token_type
        response.access_expires_at = result.tokens.access_expires_at
        response.refresh_expires_at = result.tokens.refresh_expires_at
    return response


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        username=account.username,
        email=account.email,
        status=account.status,
        first_name=account.first_name,
        last_name=account.last_name,
        require_password_change=account.require_password_change,
        last_login_at=account.last_login_at,
        password_changed_at=account.password_changed_at,
        created_at=account.created_at,
    )


def _password_response(result: PasswordResult) -> PasswordResultResponse:
    return PasswordResultResponse(
        account_id=result.account_id,
        password_changed_at=result.password_changed_at,
        require_password_change=result.require_password_change,
        sessions_revoked=result.sessions_revoked,
    )


def _bearer_or_401(authorization: Optional[str]) -> str:
    token = get_runtime().auth.extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    return get_runtime().auth.verify_access(_bearer_or_401(authorization))


def require_permission(*slugs: str, require_all: bool = False):
    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        require_permissions(principal, slugs, require_all=require_all)
        return principal

    return _dependency


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request):
    """Self-registration; the account starts ``PENDING`` with the default role."""
    runtime = get_runtime()
    account = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        _operation_context(request),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=_dump(_account_response(account)))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request):
    """Authenticate with username or email.

    Raises:
        401: invalid credentials
        403: account not active
        423: account locked, with ``Retry-After``
    """
    runtime = get_runtime()
    result = await runtime.auth.authenticate(
        body.credential, body.password, _operation_context(request)
    )
    return Envelope(status="ok", data=_dump(_token_response(result)))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, _operation_context(request))
    return Envelope(status="ok", data=_dump(_token_response(result)))


@router.post("/logout", response_model=Envelope)
async def logout(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, _operation_context(request))
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/logout-all", response_model=Envelope)
async def logout_all(request: Request, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(
        principal.account_id, _operation_context(request, principal.account_id)
    )
    return Envelope(status="ok", data={"sessionsRevoked": revoked})


@router.post("/password/change", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """Change the caller's password.

    Accepts a regular access token or the password-change token returned by a
    login that requires a new password.
    """
    runtime = get_runtime()
    account_id = runtime.auth.verify_password_change_subject(_bearer_or_401(authorization))
    result = await runtime.auth.change_password(
        account_id,
        body.current_password,
        body.new_password,
        _operation_context(request, account_id),
    )
    return Envelope(status="ok", data=_dump(_password_response(result)))


@router.post("/password/reset/request", response_model=Envelope, status_code=202)
async def request_password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.reset_password_request(body.email, _operation_context(request))
    # Same response whether or not the email is registered
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/password/reset/confirm", response_model=Envelope)
async def confirm_password_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.reset_password_confirm(
        body.token, body.new_password, _operation_context(request)
    )
    return Envelope(status="ok", data=_dump(_password_response(result)))


@router.get("/me", response_model=Envelope)
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=_dump(
            PrincipalResponse(
                account_id=principal.account_id,
                username=principal.username,
                email=principal.email,
                roles=list(principal.roles),
                permissions=sorted(principal.permissions),
                token_expires_at=principal.expires_at,
            )
        ),
    )


@router.get("/me/permissions", response_model=Envelope)
async def my_permissions(principal: Principal = Depends(get_principal)):
    """Permissions resolved from the current role assignments, not the token."""
    runtime = get_runtime()
    permissions = await runtime.auth.resolve_permissions(principal.account_id)
    return Envelope(
        status="ok",
        data=_dump(
            PermissionsResponse(account_id=principal.account_id, permissions=sorted(permissions))
        ),
    )


@router.post("/admin/accounts/{account_id}/password-reset", response_model=Envelope)
async def admin_reset_password(
    body: AdminPasswordResetRequest,
    request: Request,
    account_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_permission(PERM_RESET_PASSWORD)),
):
    runtime = get_runtime()
    result = await runtime.auth.admin_reset_password(
        account_id, body.new_password, _operation_context(request, principal.account_id)
    )
    return Envelope(status="ok", data=_dump(_password_response(result)))


@router.post("/admin/accounts/{account_id}/status", response_model=Envelope)
async def admin_set_status(
    body: AccountStatusRequest,
    request: Request,
    account_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_permission(PERM_CHANGE_STATUS)),
):
    if account_id == principal.account_id:
        raise _http_error("forbidden", "cannot change own account status", status_code=403)
    runtime = get_runtime()
    account = await runtime.auth.set_account_status(
        account_id, body.status, _operation_context(request, principal.account_id)
    )
    return Envelope(status="ok", data=_dump(_account_response(account)))


@router.get("/admin/accounts/{account_id}/login-attempts", response_model=Envelope)
async def admin_login_attempts(
    account_id: str = Path(..., max_length=64),
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(require_permission(PERM_VIEW_ACCOUNTS)),
):
    runtime = get_runtime()
    await runtime.auth.get_account(account_id)
    attempts = await runtime.auth.login_history(account_id, limit)
    items = [
        LoginAttemptResponse(
            id=attempt.id,
            succeeded=attempt.succeeded,
            failure_reason=attempt.failure_reason,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            created_at=attempt.created_at,
        )
        for attempt in attempts
    ]
    return Envelope(status="ok", data=_dump(LoginAttemptListResponse(items=items)))
