import asyncio
import json

import httpx
import pytest
from caldav.lib import error as dav_error
from lxml import etree

from calsync_providers.auth import TokenRefreshError
from calsync_providers.providers import (
    AuthenticationError, CalendarNotFoundError, CalendarProviderError, NetworkError, ParseError,
    PermissionDeniedError, ProviderErrorType, RateLimitError, RequestTimeoutError, classify_error, user_notice,
)


def status_error(status_code):
    request = httpx.Request('GET', 'https://api.example.com/x')
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


@pytest.mark.parametrize("status_code, expected", [
    (401, AuthenticationError),
    (403, PermissionDeniedError),
    (404, CalendarNotFoundError),
    (429, RateLimitError),
    (500, CalendarProviderError),
])
def test_status_codes(status_code, expected):
    assert type(classify_error(status_error(status_code))) is expected


def test_transport_errors():
    request = httpx.Request('GET', 'https://api.example.com/x')

    assert isinstance(classify_error(httpx.ReadTimeout("slow", request=request)), RequestTimeoutError)
    assert isinstance(classify_error(httpx.ConnectError("refused", request=request)), NetworkError)
    assert isinstance(classify_error(asyncio.TimeoutError()), RequestTimeoutError)


def test_parse_and_oauth_errors():
    with pytest.raises(json.JSONDecodeError) as json_error:
        json.loads("{not json")
    with pytest.raises(etree.XMLSyntaxError) as xml_error:
        etree.fromstring(b"<unclosed>")

    assert isinstance(classify_error(json_error.value), ParseError)
    assert isinstance(classify_error(xml_error.value), ParseError)
    assert isinstance(classify_error(TokenRefreshError("expired")), AuthenticationError)


@pytest.mark.parametrize("error, expected", [
    (dav_error.AuthorizationError(url="https://caldav.icloud.com/", reason="Unauthorized"), AuthenticationError),
    (dav_error.AuthorizationError(url="https://caldav.icloud.com/", reason="Forbidden"), PermissionDeniedError),
    (dav_error.RateLimitError(url="https://caldav.icloud.com/", reason="Too Many Requests"), RateLimitError),
    (dav_error.NotFoundError(url="https://caldav.icloud.com/x/"), CalendarNotFoundError),
    (dav_error.ResponseError("HTTP/1.1 500 Internal Server Error"), ParseError),
])
def test_caldav_errors(error, expected):
    assert type(classify_error(error)) is expected


@pytest.mark.parametrize("message, expected", [
    ("Server said 401", ProviderErrorType.AUTH),
    ("invalid_grant: token revoked", ProviderErrorType.AUTH),
    ("Forbidden resource", ProviderErrorType.PERMISSION),
    ("Calendar not found", ProviderErrorType.NOT_FOUND),
    ("Too many requests", ProviderErrorType.RATE_LIMIT),
    ("operation timed out", ProviderErrorType.TIMEOUT),
    ("ECONNREFUSED 127.0.0.1", ProviderErrorType.NETWORK),
    ("Malformed XML", ProviderErrorType.PARSE),
    ("something odd", ProviderErrorType.UNKNOWN),
])
def test_message_heuristics(message, expected):
    assert classify_error(RuntimeError(message)).error_type == expected


def test_classified_errors_pass_through():
    error = RateLimitError("slow down")

    assert classify_error(error) is error


def test_context_prefixes_message():
    classified = classify_error(RuntimeError("boom"), "List calendars")

    assert str(classified) == "List calendars: boom"
    assert isinstance(classified.original_error, RuntimeError)


def test_retryable_categories():
    assert RateLimitError("x").retryable
    assert RequestTimeoutError("x").retryable
    assert NetworkError("x").retryable
    assert not AuthenticationError("x").retryable
    assert not ParseError("x").retryable


def test_user_notice_never_leaks_raw_text():
    notice = user_notice(RuntimeError("401 token=abc123 rejected"))

    assert notice == "Authentication failed. Please reconnect your calendar."
    assert "abc123" not in notice
