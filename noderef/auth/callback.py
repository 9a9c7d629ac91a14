"""Out-of-band delivery of authorization codes.

The provider redirects the browser to the backend's /auth/callback endpoint.
That endpoint cannot reply to the login in progress directly, so it stages
the code in a single slot which the login poller drains. This module holds:
- The slot itself (at most one buffered code, last write wins)
- Parsing of callback query strings
- The HTML pages shown to the user after the redirect
"""

import html
import logging
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/auth/callback"


@dataclass(frozen=True)
class DeliveredCode:
    """An authorization code received on the redirect endpoint.

    Attributes:
        code: The authorization code
        state: The state parameter echoed by the provider
        received_at: Wall-clock receive time (epoch seconds)
    """

    code: str
    state: str
    received_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        """Payload of the poll RPC; timestamp in epoch milliseconds."""
        return {"code": self.code, "state": self.state, "timestamp": int(self.received_at * 1000)}


class CodeDeliverySlot:
    """Single-slot buffer between the callback endpoint and the poller."""

    def __init__(self) -> None:
        self._delivered: DeliveredCode | None = None

    def deliver(self, code: str, state: str) -> DeliveredCode:
        """Stage a code, replacing any unconsumed one."""
        if self._delivered is not None:
            logger.debug("Replacing an unconsumed authorization code")
        self._delivered = DeliveredCode(code=code, state=state)
        logger.info("Authorization code received")
        return self._delivered

    def poll(self) -> DeliveredCode | None:
        """Return the staged code and clear the slot.

        Read and clear happen without a suspension point in between, so two
        pollers can never observe the same delivery.
        """
        delivered, self._delivered = self._delivered, None
        return delivered

    def clear(self) -> None:
        self._delivered = None


@dataclass
class CallbackResult:
    """Query parameters of a provider redirect.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter from the callback
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if callback was successful."""
        return bool(self.code) and self.error is None


def parse_callback_url(url: str) -> CallbackResult:
    """Parse OAuth callback URL parameters.

    Args:
        url: The callback URL or request target with query parameters

    Returns:
        CallbackResult with parsed parameters
    """
    params = parse_qs(urlparse(url).query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


_PAGE_STYLE = """
        body {{
            font-family: system-ui, sans-serif;
            margin: 0;
            min-height: 100vh;
            display: grid;
            place-items: center;
            background: {background};
        }}
        main {{
            background: #fff;
            border-top: 6px solid {accent};
            padding: 32px 48px;
            max-width: 420px;
            border-radius: 6px;
        }}
        h1 {{ font-size: 22px; margin: 0 0 12px; color: #222; }}
        p {{ margin: 0 0 12px; color: #444; line-height: 1.4; }}
        pre {{
            white-space: pre-wrap;
            margin: 0;
            padding: 10px;
            background: #f6f6f6;
            color: #8b1e1e;
            font-size: 13px;
        }}
"""

_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>NodeRef - {title}</title>
<style>{style}</style>
</head>
<body>
<main>
<h1>{title}</h1>
<p>{message}</p>
{detail}
</main>
</body>
</html>"""


def _render(title: str, message: str, accent: str, detail: str = "") -> str:
    detail_html = f"<pre>{html.escape(detail)}</pre>" if detail else ""
    return _PAGE.format(
        title=html.escape(title),
        message=html.escape(message),
        style=_PAGE_STYLE.format(background="#eef1f4", accent=accent),
        detail=detail_html,
    )


def success_page() -> str:
    return _render(
        "Sign-in complete",
        "You can close this window and return to NodeRef.",
        "#2e86c1",
    )


def error_page(error: str, description: str | None = None) -> str:
    return _render(
        "Sign-in failed",
        "The identity provider reported an error. Close this window and try again.",
        "#c0392b",
        detail=f"{error}: {description or 'No description provided'}",
    )


def handle_callback(target: str, slot: CodeDeliverySlot) -> tuple[HTTPStatus, str]:
    """Process a GET on the callback endpoint.

    Args:
        target: Request target, path plus query string
        slot: Slot to stage a successful delivery in

    Returns:
        HTTP status and HTML body for the browser
    """
    result = parse_callback_url(target)

    if result.error:
        logger.warning(f"Provider redirected with error: {result.error}")
        return HTTPStatus.OK, error_page(result.error, result.error_description)

    if not result.code:
        return HTTPStatus.BAD_REQUEST, error_page(
            "invalid_request", "Missing authorization code"
        )

    slot.deliver(result.code, result.state or "")
    return HTTPStatus.OK, success_page()
