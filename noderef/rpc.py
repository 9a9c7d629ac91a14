"""RPC routes of the backend's auth surface.

Each route takes the JSON object posted to /rpc/<method> and returns the
data of a success envelope. dispatch() wraps the result:
    {"success": true, "data": ...}
    {"success": false, "error": {"code", "message", "details"}}
"""

import logging
from typing import Any, Awaitable, Callable

from .auth.errors import AuthError, ErrorCode, ValidationError
from .auth.manager import AuthService

logger = logging.getLogger(__name__)

Params = dict[str, Any]
Handler = Callable[[AuthService, Params], Awaitable[Any]]


def _require(params: Params, name: str) -> Any:
    value = params.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{name} is required", {"field": name})
    return value


async def begin_oauth2_login(service: AuthService, params: Params) -> dict[str, Any]:
    return service.begin_login(
        str(params.get("providerHost") or ""),
        str(params.get("realm") or ""),
        str(params.get("clientId") or ""),
        str(params.get("baseUrl") or ""),
    )


async def poll_oauth2_code(service: AuthService, params: Params) -> dict[str, Any]:
    return service.poll_code()


async def validate_credentials(service: AuthService, params: Params) -> dict[str, Any]:
    result = await service.validator.validate(
        str(params.get("baseUrl") or ""),
        str(params.get("username") or ""),
        str(params.get("password") or ""),
    )
    return result.to_dict()


async def validate_oidc_credentials(service: AuthService, params: Params) -> dict[str, Any]:
    result = await service.validator.validate_oidc(
        str(params.get("baseUrl") or ""),
        str(params.get("accessToken") or ""),
    )
    return result.to_dict()


async def exchange_oauth2_token(service: AuthService, params: Params) -> dict[str, Any]:
    tokens = await service.exchange_code(
        str(_require(params, "code")), str(_require(params, "state"))
    )
    return tokens.to_response()


async def refresh_tokens(service: AuthService, params: Params) -> dict[str, Any]:
    raw = _require(params, "serverId")
    try:
        server_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("serverId must be an integer", {"field": "serverId"}) from None
    return await service.refresh_tokens(server_id)


ROUTES: dict[str, Handler] = {
    "auth.beginOAuth2Login": begin_oauth2_login,
    "auth.pollOAuth2Code": poll_oauth2_code,
    "auth.validateCredentials": validate_credentials,
    "auth.validateOidcCredentials": validate_oidc_credentials,
    "auth.exchangeOAuth2Token": exchange_oauth2_token,
    "auth.refreshTokens": refresh_tokens,
}


def error_envelope(code: ErrorCode, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code.value, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


async def dispatch(service: AuthService, method: str, params: Any) -> dict[str, Any]:
    """Run an RPC method and wrap the outcome in an envelope."""
    handler = ROUTES.get(method)
    if handler is None:
        return error_envelope(ErrorCode.NOT_FOUND, f"Unknown method: {method}")

    if params is None:
        params = {}
    if not isinstance(params, dict):
        return error_envelope(ErrorCode.INVALID_INPUT, "Request body must be a JSON object")

    try:
        data = await handler(service, params)
    except AuthError as e:
        logger.info(f"RPC {method} failed: {e.code.value}: {e.message}")
        return {"success": False, "error": e.to_dict()}
    except Exception:
        logger.exception(f"Error handling RPC {method}")
        return error_envelope(ErrorCode.INTERNAL_ERROR, "Internal error")

    return {"success": True, "data": data}
