"""Tests for credential validation against a content server."""

import socket

import httpx
import pytest

from noderef.auth.validator import (
    MSG_API_NOT_FOUND,
    MSG_CONNECTION_REFUSED,
    MSG_HOST_NOT_FOUND,
    MSG_INVALID_CREDENTIALS,
    MSG_INVALID_TOKEN,
    MSG_SERVER_ERROR,
    MSG_TIMEOUT,
    CredentialValidator,
    ValidationResult,
    describe_request_error,
    describe_status,
)

from conftest import RecordingHandler, json_response


def validator_for(handler):
    return CredentialValidator(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestValidate:
    """Tests for basic credential validation."""

    @pytest.mark.asyncio
    async def test_valid_admin(self, person_entry):
        """Test that accepted credentials report admin capability and user."""
        handler = RecordingHandler(lambda r: json_response(200, person_entry))
        result = await validator_for(handler).validate("localhost:8080", "admin", "admin")

        assert result.valid
        assert result.is_admin
        assert result.user == {
            "id": "admin",
            "displayName": "Administrator",
            "email": "admin@example.com",
        }
        request = handler.requests[0]
        assert str(request.url) == (
            "http://localhost:8080/alfresco/api/-default-/public/alfresco/versions/1/people/-me-"
        )
        assert request.headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_valid_non_admin(self, person_entry):
        """Test that a missing isAdmin capability means not admin."""
        person_entry["entry"]["capabilities"] = {}
        handler = RecordingHandler(lambda r: json_response(200, person_entry))
        result = await validator_for(handler).validate("http://ecm", "bob", "pw")

        assert result.valid
        assert not result.is_admin

    @pytest.mark.asyncio
    async def test_rejected(self):
        """Test that 401 reports invalid credentials."""
        handler = RecordingHandler(lambda r: httpx.Response(401))
        result = await validator_for(handler).validate("http://ecm", "admin", "wrong")

        assert result == ValidationResult(valid=False, is_admin=False, error=MSG_INVALID_CREDENTIALS)

    @pytest.mark.asyncio
    async def test_blank_password_makes_no_request(self):
        """Test that blank input fails without a network call."""
        handler = RecordingHandler(lambda r: httpx.Response(200))
        result = await validator_for(handler).validate("http://ecm", "admin", "")

        assert not result.valid
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_malformed_url(self):
        """Test that a malformed URL is reported, not raised."""
        handler = RecordingHandler(lambda r: httpx.Response(200))
        result = await validator_for(handler).validate("http://bad host", "admin", "admin")

        assert not result.valid
        assert "baseUrl" in result.error
        assert handler.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("base_url", ["http://exa\x00mple.com", "http://☃☃.-x-"])
    async def test_unencodable_host_reported(self, base_url):
        """Test that a host httpx cannot encode is a failed result, not an exception."""
        handler = RecordingHandler(lambda r: httpx.Response(200))
        result = await validator_for(handler).validate(base_url, "admin", "admin")

        assert not result.valid
        assert "baseUrl" in result.error
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        """Test that a refused connection has a friendly message."""

        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        result = await validator_for(refuse).validate("http://ecm", "admin", "admin")
        assert result.error == MSG_CONNECTION_REFUSED

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test that a timeout has a friendly message."""

        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await validator_for(slow).validate("http://ecm", "admin", "admin")
        assert result.error == MSG_TIMEOUT


class TestValidateOidc:
    """Tests for access token validation."""

    @pytest.mark.asyncio
    async def test_bearer_header(self, person_entry):
        """Test that the token is sent as a Bearer header."""
        handler = RecordingHandler(lambda r: json_response(200, person_entry))
        result = await validator_for(handler).validate_oidc("http://ecm/alfresco", "tok")

        assert result.valid
        assert handler.requests[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_rejected_token(self):
        """Test that 403 reports an invalid token."""
        handler = RecordingHandler(lambda r: httpx.Response(403))
        result = await validator_for(handler).validate_oidc("http://ecm", "tok")

        assert result.error == MSG_INVALID_TOKEN


class TestDescribe:
    """Tests for message mapping."""

    @pytest.mark.parametrize(
        "status,message",
        [(401, MSG_INVALID_CREDENTIALS), (403, MSG_INVALID_CREDENTIALS), (404, MSG_API_NOT_FOUND), (502, MSG_SERVER_ERROR)],
    )
    def test_describe_status(self, status, message):
        """Test status code messages."""
        assert describe_status(status) == message

    def test_dns_failure(self):
        """Test that a resolver failure is reported as host not found."""
        error = httpx.ConnectError("[Errno -2] Name or service not known")
        assert describe_request_error(error) == MSG_HOST_NOT_FOUND

    def test_dns_failure_in_cause(self):
        """Test that a gaierror in the exception chain is detected."""
        error = httpx.ConnectError("connect failed")
        error.__cause__ = socket.gaierror(-2, "lookup failed")
        assert describe_request_error(error) == MSG_HOST_NOT_FOUND

    def test_to_dict(self):
        """Test the RPC payload shape."""
        assert ValidationResult.failure("nope").to_dict() == {
            "valid": False,
            "isAdmin": False,
            "error": "nope",
        }
