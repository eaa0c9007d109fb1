import base64
import json
from datetime import datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest
import pytz
from caldav.async_davclient import AsyncDAVClient
from pydantic_settings import SettingsConfigDict

from calsync_providers.auth import CalendarAuthEngine
from calsync_providers.config import Settings
from calsync_providers.models import OAuthTokenData


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    __test__ = False

    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(**overrides):
    values = dict(
        google_client_id='google-client-id',
        outlook_client_id='outlook-client-id',
        oauth_listener_stop_delay_seconds=0,
    )
    values.update(overrides)
    return TestSettings(**values)


def make_tokens(access_token='access-1', refresh_token='refresh-1', expires_in=3600,
                scope='https://www.googleapis.com/auth/calendar'):
    now = datetime.now(pytz.UTC)
    return OAuthTokenData(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + timedelta(seconds=expires_in),
        scope=scope,
        issued_at=now,
    )


class FakeApi:
    """Routes httpx requests to handlers keyed by (method, path)."""

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.token_calls = 0

    def on(self, method, path, handler):
        self.routes[(method, path)] = handler

    def token_endpoint(self, request):
        self.token_calls += 1
        form = parse_qs(request.content.decode())
        return httpx.Response(200, json={
            'access_token': f"issued-{self.token_calls}",
            'expires_in': 3600,
            'scope': 'https://www.googleapis.com/auth/calendar',
            'token_type': 'Bearer',
            **({'refresh_token': 'rotated'} if form.get('grant_type') == ['authorization_code'] else {}),
        })

    def __call__(self, request):
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None and request.url.path.endswith('/token'):
            return self.token_endpoint(request)
        if handler is None:
            return httpx.Response(404, json={'error': {'message': 'no route'}})
        if isinstance(handler, httpx.Response):
            return httpx.Response(handler.status_code, headers=handler.headers, content=handler.content)
        return handler(request)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


class FakeDavSession:
    """Takes the place of the CalDAV client's HTTP session and routes to a FakeApi."""

    def __init__(self, api):
        self.api = api
        self.closed = False

    async def request(self, method, url, data=None, content=None, headers=None, auth=None, **kwargs):
        request = httpx.Request(method, url, content=data if data is not None else content, headers=headers)
        if isinstance(auth, httpx.Auth):
            request = next(auth.auth_flow(request))
        elif auth is not None:
            credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
            request.headers['Authorization'] = f"Basic {credentials}"
        response = self.api(request)
        response.reason = response.reason_phrase
        return response

    async def close(self):
        self.closed = True

    aclose = close


def make_dav_client(api, username='me@icloud.com', password='abcd-efgh-ijkl-mnop'):
    client = AsyncDAVClient(
        url='https://caldav.icloud.com/',
        username=username,
        password=password,
        auth_type='basic',
        enable_rfc6764=False,
        rate_limit_handle=False,
    )
    client.session = FakeDavSession(api)
    return client


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def http_client(fake_api):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_api))


@pytest.fixture
def auth_engine(settings, http_client):
    return CalendarAuthEngine(settings, http_client=http_client, open_browser=lambda url: None)
