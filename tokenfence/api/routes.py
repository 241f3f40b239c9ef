from __future__ import annotations

import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from tokenfence.api.schemas import (
    ChangePasswordRequest,
    CountryCreateRequest,
    CountryUpdateRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MenuCreateRequest,
    MenuReorderRequest,
    MenuUpdateRequest,
    RefreshTokenRequest,
    RegisterRequest,
    VerifyTokenRequest,
)
from tokenfence.logging import get_logger
from tokenfence.service.auth import AuthContext
from tokenfence.service.runtime import get_runtime
from tokenfence.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter()

_SNAKE_RE = re.compile(r"_([a-z])")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers())


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    key: str, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count one credential request against ``key``.

    Raises:
        HTTPException with 429 if the window's allowance is used up
    """
    runtime = get_runtime()
    result = await runtime.rate_limiter.check(
        key,
        runtime.settings.rate_limit_auth_per_window,
        runtime.settings.rate_limit_window_seconds,
    )
    info = RateLimitInfo(result.limit, result.remaining, result.reset_seconds)
    if not result.allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(result.reset_seconds), **info.headers()},
        )
    if response is not None and result.limit > 0 and runtime.rate_limiter.enabled:
        info.apply_headers(response)
    return info


def _camelize(value: Any) -> Any:
    """Rename snake_case record keys to the camelCase wire names."""
    if isinstance(value, dict):
        return {
            _SNAKE_RE.sub(lambda m: m.group(1).upper(), key): _camelize(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_camelize(item) for item in value]
    return value


def _record(obj: Any) -> Dict[str, Any]:
    return _camelize(obj.to_dict())


def _tokens_response(tokens: TokenPair) -> Dict[str, Any]:
    return {
        "accessToken": tokens.access_token,
        "refreshToken": tokens.refresh_token,
        "expiresIn": tokens.expires_in,
        "expiresAt": tokens.expires_at.isoformat(),
    }


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, required_role="admin")


# -- auth --------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and return its first credential pair.

    Raises:
        400: If the body fails validation
        409: If the email is already registered
        429: If too many registrations came from this client
    """
    await _enforce_rate_limit(f"register:{_client_address(request)}", response=response)
    runtime = get_runtime()
    user, tokens = await runtime.auth.register(body.email, body.password)
    return Envelope(
        status="ok",
        message="Registration successful",
        data={"user": _record(user), **_tokens_response(tokens)},
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If the credentials are invalid or the account is deactivated
        429: If rate limit exceeded for this email or client
    """
    await _enforce_rate_limit(f"login:{body.email.lower()}", response=response)
    await _enforce_rate_limit(f"login-client:{_client_address(request)}")
    runtime = get_runtime()
    _, tokens = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", message="Login successful", data=_tokens_response(tokens))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: RefreshTokenRequest, request: Request, response: Response):
    await _enforce_rate_limit(f"refresh:{_client_address(request)}", response=response)
    runtime = get_runtime()
    access = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        message="Token refreshed successfully",
        data={
            "accessToken": access,
            "expiresIn": runtime.auth.codec.access_ttl_seconds,
        },
    )


@router.post("/auth/refresh-token-rotate", response_model=Envelope, tags=["auth"])
async def refresh_token_rotate(
    body: RefreshTokenRequest, request: Request, response: Response
):
    """Exchange a refresh credential for a new pair; the old one is consumed."""
    await _enforce_rate_limit(f"refresh:{_client_address(request)}", response=response)
    runtime = get_runtime()
    tokens = await runtime.auth.rotate(body.refresh_token)
    return Envelope(
        status="ok", message="Tokens rotated successfully", data=_tokens_response(tokens)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Blacklist the bearer credential and, when given, the refresh credential.

    An expired but correctly signed bearer is accepted so a client can always
    log out.

    Raises:
        401: If no signature-valid bearer credential is supplied
        500: If the revocation could not be recorded
    """
    runtime = get_runtime()
    token = runtime.auth.extract_bearer(authorization)
    await runtime.auth.logout(token, body.refresh_token if body else None)
    return Envelope(status="ok", message="Logout successful", data=None)


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Replace the caller's password and revoke every existing session."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(
        status="ok",
        message="Password changed successfully. Please login again with your new password.",
        data=None,
    )


@router.post("/auth/verify-token", response_model=Envelope, tags=["auth"])
async def verify_token(body: VerifyTokenRequest, request: Request, response: Response):
    await _enforce_rate_limit(f"verify:{_client_address(request)}", response=response)
    runtime = get_runtime()
    valid = await runtime.auth.verify_token(body.token)
    return Envelope(status="ok", data={"valid": valid})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=_record(user))


# -- countries ---------------------------------------------------------


@router.get("/countries", response_model=Envelope, tags=["countries"])
async def list_countries(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    status: Optional[str] = Query(None, pattern="^(active|inactive)$"),
    sort_by: str = Query("name", alias="sortBy"),
    sort_order: str = Query("ASC", alias="sortOrder"),
):
    runtime = get_runtime()
    result = await runtime.countries.list_countries(
        page=page,
        limit=limit,
        search=search,
        status=status,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return Envelope(status="ok", data=_camelize(result.to_dict()))


@router.get("/countries/active/list", response_model=Envelope, tags=["countries"])
async def list_active_countries():
    runtime = get_runtime()
    countries = await runtime.countries.list_active()
    return Envelope(status="ok", data=[_record(c) for c in countries])


@router.get("/countries/code/{code}", response_model=Envelope, tags=["countries"])
async def get_country_by_code(code: str = Path(..., min_length=2, max_length=3)):
    runtime = get_runtime()
    country = await runtime.countries.get_by_code(code)
    return Envelope(status="ok", data=_record(country))


@router.get("/countries/{country_id}", response_model=Envelope, tags=["countries"])
async def get_country(country_id: str):
    runtime = get_runtime()
    country = await runtime.countries.get_country(country_id)
    return Envelope(status="ok", data=_record(country))


@router.post("/countries", response_model=Envelope, status_code=201, tags=["countries"])
async def create_country(
    body: CountryCreateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    country = await runtime.countries.create(
        body.name,
        body.code,
        currency_code=body.currency_code,
        status=body.status,
        created_by=principal.user_id,
    )
    return Envelope(status="ok", message="Country created successfully", data=_record(country))


@router.put("/countries/{country_id}", response_model=Envelope, tags=["countries"])
async def update_country(
    country_id: str,
    body: CountryUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    country = await runtime.countries.update(
        country_id,
        body.model_dump(exclude_unset=True),
        updated_by=principal.user_id,
    )
    return Envelope(status="ok", message="Country updated successfully", data=_record(country))


@router.delete("/countries/{country_id}", response_model=Envelope, tags=["countries"])
async def delete_country(country_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    country = await runtime.countries.soft_delete(country_id, updated_by=principal.user_id)
    return Envelope(status="ok", message="Country deactivated successfully", data=_record(country))


@router.delete(
    "/countries/{country_id}/permanent", response_model=Envelope, tags=["countries"]
)
async def delete_country_permanent(
    country_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await runtime.countries.hard_delete(country_id)
    return Envelope(status="ok", message="Country permanently deleted", data=None)


# -- menus -------------------------------------------------------------


@router.get("/menus", response_model=Envelope, tags=["menus"])
async def list_menus(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    parent_id: Optional[str] = Query(None, alias="parentId"),
    sort_by: str = Query("sort_order", alias="sortBy"),
    sort_order: str = Query("ASC", alias="sortOrder"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = await runtime.menus.list_menus(
        page=page,
        limit=limit,
        search=search,
        is_active=is_active,
        parent_id=parent_id,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return Envelope(status="ok", data=_camelize(result.to_dict()))


@router.get("/menus/active/list", response_model=Envelope, tags=["menus"])
async def list_active_menus(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    menus = await runtime.menus.list_active()
    return Envelope(status="ok", data=[_record(m) for m in menus])


@router.get("/menus/tree", response_model=Envelope, tags=["menus"])
async def menu_tree(
    include_inactive: bool = Query(False, alias="includeInactive"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    tree = await runtime.menus.tree(include_inactive=include_inactive)
    return Envelope(status="ok", data=_camelize(tree))


@router.put("/menus/reorder", response_model=Envelope, tags=["menus"])
async def reorder_menus(
    body: MenuReorderRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    menus = await runtime.menus.reorder((item.id, item.sort_order) for item in body.items)
    return Envelope(
        status="ok", message="Menus reordered successfully", data=[_record(m) for m in menus]
    )


@router.get("/menus/{menu_id}", response_model=Envelope, tags=["menus"])
async def get_menu(menu_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    menu = await runtime.menus.get_menu(menu_id)
    return Envelope(status="ok", data=_record(menu))


@router.get("/menus/{menu_id}/children", response_model=Envelope, tags=["menus"])
async def menu_children(menu_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    children = await runtime.menus.children(menu_id)
    return Envelope(status="ok", data=[_record(m) for m in children])


@router.post("/menus", response_model=Envelope, status_code=201, tags=["menus"])
async def create_menu(body: MenuCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    menu = await runtime.menus.create(
        body.name,
        body.route,
        icon=body.icon,
        parent_id=body.parent_id,
        sort_order=body.sort_order,
        is_active=body.is_active,
    )
    return Envelope(status="ok", message="Menu created successfully", data=_record(menu))


@router.put("/menus/{menu_id}", response_model=Envelope, tags=["menus"])
async def update_menu(
    menu_id: str, body: MenuUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    menu = await runtime.menus.update(menu_id, body.model_dump(exclude_unset=True))
    return Envelope(status="ok", message="Menu updated successfully", data=_record(menu))


@router.delete("/menus/{menu_id}", response_model=Envelope, tags=["menus"])
async def delete_menu(menu_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    menu = await runtime.menus.soft_delete(menu_id)
    return Envelope(status="ok", message="Menu deactivated successfully", data=_record(menu))


@router.delete("/menus/{menu_id}/permanent", response_model=Envelope, tags=["menus"])
async def delete_menu_permanent(
    menu_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await runtime.menus.hard_delete(menu_id)
    return Envelope(status="ok", message="Menu permanently deleted", data=None)
