"""OAuth 2.0 + PKCE authentication engine for token-based calendar providers.

Drives the authorization-code flow through a loopback listener (or the
legacy custom-scheme callback), exchanges, refreshes and revokes tokens,
and reports lifecycle events to subscribers. Tokens are handed back to the
caller; nothing is persisted here.
"""

import base64
import hashlib
import logging
import secrets
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
import pytz

from .config import Settings
from .models import (
    AuthEvent, AuthEventType, OAuthTokenData, PendingOAuthRequest, ProviderState, ProviderType
)
from .server import LoopbackCallbackServer

logger = logging.getLogger(__name__)


class OAuthError(Exception):
    """Base exception for OAuth flow errors."""

    code = "oauth_error"


class OAuthConfigurationError(OAuthError):
    """No client identifier configured for the provider."""

    code = "configuration"


class OAuthCallbackError(OAuthError):
    """The callback carried an error or lacked code/state."""

    code = "invalid_callback"


class OAuthStateExpiredError(OAuthError):
    """Unknown, expired or already consumed ``state``."""

    code = "state_expired"


class TokenExchangeError(OAuthError):
    """Authorization code could not be exchanged."""

    code = "token_exchange_failed"


class TokenRefreshError(OAuthError):
    """Access token could not be refreshed."""

    code = "token_refresh_failed"


class CallbackServerError(OAuthError):
    """No loopback port could be bound."""

    code = "callback_server"


# ----------------------------------------------------------------------
# PKCE
# ----------------------------------------------------------------------

def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode('ascii').rstrip('=')


def generate_code_verifier() -> str:
    """64 random bytes, base64url without padding."""
    return _b64url(secrets.token_bytes(64))


def code_challenge_for(code_verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    return _b64url(hashlib.sha256(code_verifier.encode('ascii')).digest())


def generate_state() -> str:
    """32 random bytes, base64url without padding."""
    return _b64url(secrets.token_bytes(32))


@dataclass(frozen=True)
class PKCEData:
    code_verifier: str
    code_challenge: str
    state: str


def generate_pkce() -> PKCEData:
    verifier = generate_code_verifier()
    return PKCEData(code_verifier=verifier, code_challenge=code_challenge_for(verifier), state=generate_state())


# ----------------------------------------------------------------------
# Provider endpoints
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class OAuthProviderConfig:
    """Endpoints and scopes of one OAuth provider. ``{tenant}`` is substituted."""

    authorization_url: str
    token_url: str
    scopes: List[str]
    revoke_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    extra_auth_params: Dict[str, str] = field(default_factory=dict)

    def with_tenant(self, url: str, tenant_id: Optional[str]) -> str:
        return url.replace('{tenant}', tenant_id or 'common')


OAUTH_PROVIDERS: Dict[ProviderType, OAuthProviderConfig] = {
    ProviderType.GOOGLE: OAuthProviderConfig(
        authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        revoke_url="https://oauth2.googleapis.com/revoke",
        userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
        scopes=[
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/userinfo.email",
        ],
        extra_auth_params={"access_type": "offline", "prompt": "consent"},
    ),
    ProviderType.OUTLOOK: OAuthProviderConfig(
        authorization_url="https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
        userinfo_url="https://graph.microsoft.com/v1.0/me",
        scopes=["Calendars.ReadWrite", "User.Read", "offline_access"],
        extra_auth_params={"prompt": "select_account"},
    ),
}


@dataclass
class ClientCredentials:
    client_id: Optional[str]
    client_secret: Optional[str] = None


AuthListener = Callable[[AuthEvent], Any]


class CalendarAuthEngine:
    """OAuth 2.0 authorization-code + PKCE engine.

    One loopback listener is live at a time: starting a flow replaces any
    running listener. Pending requests are keyed by ``state`` and consumed
    exactly once.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        open_browser: Callable[[str], Any] = webbrowser.open,
        callback_server_factory: Optional[Callable[..., Any]] = None,
    ):
        """Initialize the auth engine.

        Args:
            settings: Application settings
            http_client: Shared client for token/userinfo requests
            open_browser: Callable opening the authorization URL
            callback_server_factory: Builds the loopback listener
        """
        self.settings = settings
        self.logger = logger.getChild('engine')
        self._http_client = http_client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        self._owns_client = http_client is None
        self._open_browser = open_browser
        self._server_factory = callback_server_factory or LoopbackCallbackServer
        self._server = None
        self._pending: Dict[str, PendingOAuthRequest] = {}
        self._listeners: List[AuthListener] = []
        self._clients: Dict[ProviderType, ClientCredentials] = {
            ProviderType.GOOGLE: ClientCredentials(settings.google_client_id, settings.google_client_secret),
            ProviderType.OUTLOOK: ClientCredentials(settings.outlook_client_id),
        }

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure_clients(
        self,
        google_client_id: Optional[str] = None,
        google_client_secret: Optional[str] = None,
        outlook_client_id: Optional[str] = None,
    ) -> None:
        """Override the default client identifiers."""
        google = self._clients[ProviderType.GOOGLE]
        if google_client_id is not None:
            google.client_id = google_client_id
        if google_client_secret is not None:
            google.client_secret = google_client_secret
        if outlook_client_id is not None:
            self._clients[ProviderType.OUTLOOK].client_id = outlook_client_id

    def is_provider_configured(self, provider) -> bool:
        return bool(self._credentials(provider).client_id)

    def _credentials(self, provider) -> ClientCredentials:
        provider = ProviderType(provider)
        if provider not in self._clients:
            raise OAuthConfigurationError(f"{provider.value} does not use OAuth")
        return self._clients[provider]

    @property
    def pending_requests(self) -> Dict[str, PendingOAuthRequest]:
        """Snapshot of pending requests keyed by state."""
        return dict(self._pending)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """Register a lifecycle listener.

        Returns:
            Callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: AuthEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception(f"Auth listener failed on {event.type.value}")

    def _emit_error(self, provider, error: BaseException, source_id: Optional[str] = None) -> None:
        self._emit(AuthEvent(
            type=AuthEventType.AUTH_ERROR,
            provider=provider,
            error=str(error),
            error_code=getattr(error, 'code', None),
            source_id=source_id,
        ))

    # ------------------------------------------------------------------
    # Authorization flow
    # ------------------------------------------------------------------

    async def start_flow(
        self,
        provider,
        tenant_id: Optional[str] = None,
        source_id: Optional[str] = None,
        use_loopback: bool = True,
    ) -> str:
        """Begin an authorization-code flow and open the browser.

        The flow completes asynchronously when the callback arrives.

        Args:
            provider: ProviderType.GOOGLE or ProviderType.OUTLOOK
            tenant_id: Microsoft tenant (Outlook only)
            source_id: Caller's source id, echoed in events
            use_loopback: False redirects to the custom-scheme callback

        Returns:
            The authorization URL that was opened

        Raises:
            OAuthConfigurationError: If no client id is configured
            CallbackServerError: If no loopback port is free
        """
        provider = ProviderType(provider)
        credentials = self._credentials(provider)
        if not credentials.client_id:
            error = OAuthConfigurationError(
                f"OAuth client ID not configured for {provider.value}. Please configure it in settings."
            )
            self._emit_error(provider, error, source_id)
            raise error

        if provider == ProviderType.OUTLOOK:
            tenant_id = tenant_id or self.settings.outlook_tenant_id

        self._emit(AuthEvent(
            type=AuthEventType.STATUS_CHANGE,
            provider=provider,
            status=ProviderState.CONNECTING,
            source_id=source_id,
        ))

        try:
            if use_loopback:
                redirect_uri = await self._start_listener()
            else:
                redirect_uri = self.settings.oauth_legacy_redirect_uri

            pkce = generate_pkce()
            self._pending[pkce.state] = PendingOAuthRequest(
                state=pkce.state,
                provider=provider,
                code_verifier=pkce.code_verifier,
                redirect_uri=redirect_uri,
                tenant_id=tenant_id,
                source_id=source_id,
            )
            self.purge_expired_requests()

            url = self.build_authorization_url(
                provider,
                client_id=credentials.client_id,
                code_challenge=pkce.code_challenge,
                state=pkce.state,
                redirect_uri=redirect_uri,
                tenant_id=tenant_id,
            )
            self._open_browser(url)
            self.logger.info(f"Started OAuth flow for {provider.value} with redirect {redirect_uri}")
            return url
        except Exception as e:
            self.logger.error(f"Failed to start OAuth flow for {provider.value}: {e}")
            self._emit_error(provider, e, source_id)
            await self._stop_listener()
            raise

    def build_authorization_url(
        self,
        provider,
        *,
        client_id: str,
        code_challenge: str,
        state: str,
        redirect_uri: str,
        tenant_id: Optional[str] = None,
    ) -> str:
        config = OAUTH_PROVIDERS[ProviderType(provider)]
        params = {
            'client_id': client_id,
            'redirect_uri': redirect_uri,
            'response_type': 'code',
            'scope': ' '.join(config.scopes),
            'code_challenge': code_challenge,
            'code_challenge_method': 'S256',
            'state': state,
        }
        params.update(config.extra_auth_params)
        base = config.with_tenant(config.authorization_url, tenant_id)
        return f"{base}?{urlencode(params)}"

    def purge_expired_requests(self) -> int:
        """Drop pending requests older than the configured TTL.

        Returns:
            Number of requests removed
        """
        cutoff = datetime.now(pytz.UTC) - timedelta(seconds=self.settings.oauth_pending_ttl_seconds)
        expired = [state for state, request in self._pending.items() if request.created_at < cutoff]
        for state in expired:
            del self._pending[state]
        if expired:
            self.logger.debug(f"Purged {len(expired)} expired OAuth requests")
        return len(expired)

    async def _start_listener(self) -> str:
        await self._stop_listener()
        self._server = self._server_factory(
            host=self.settings.oauth_callback_host,
            ports=self.settings.callback_ports,
            path=self.settings.oauth_callback_path,
            on_callback=self.handle_callback,
            stop_delay=self.settings.oauth_listener_stop_delay_seconds,
            app_name=self.settings.app_name,
        )
        try:
            return await self._server.start()
        except OSError as e:
            raise CallbackServerError(f"Could not start OAuth callback listener: {e}") from e

    async def _stop_listener(self) -> None:
        if self._server is not None:
            server, self._server = self._server, None
            await server.stop()

    async def handle_protocol_callback(self, uri: str) -> Optional[OAuthTokenData]:
        """Entry point for the legacy custom-scheme callback."""
        query = parse_qs(urlsplit(uri).query)
        return await self.handle_callback({key: values[0] for key, values in query.items() if values})

    async def handle_callback(self, params: Mapping[str, str]) -> Optional[OAuthTokenData]:
        """Complete a flow from callback query parameters.

        Failures are reported to subscribers as auth-error events.

        Returns:
            The new tokens, or None when the callback failed
        """
        if params.get('error'):
            description = params.get('error_description') or params['error']
            self.logger.error(f"OAuth provider returned an error: {description}")
            error = OAuthCallbackError(f"Authentication failed: {description}")
            error.code = params['error']
            self._emit_error(None, error)
            return None

        code = params.get('code')
        state = params.get('state')
        if not code or not state:
            self.logger.warning("Missing code or state in OAuth callback")
            self._emit_error(None, OAuthCallbackError("Missing code or state in callback"))
            return None

        pending = self._pending.pop(state, None)
        ttl = timedelta(seconds=self.settings.oauth_pending_ttl_seconds)
        if pending is None or datetime.now(pytz.UTC) - pending.created_at > ttl:
            self.logger.error("Invalid or expired OAuth state parameter")
            self._emit_error(
                pending.provider if pending else None,
                OAuthStateExpiredError("Authentication session expired. Please try again."),
                pending.source_id if pending else None,
            )
            return None

        try:
            tokens = await self.exchange_code(
                pending.provider,
                code,
                pending.code_verifier,
                pending.redirect_uri,
                pending.tenant_id,
            )
        except OAuthError as e:
            self.logger.error(f"Token exchange failed for {pending.provider.value}: {e}")
            self._emit_error(pending.provider, e, pending.source_id)
            return None

        email = None
        try:
            email = await self.fetch_user_email(pending.provider, tokens.access_token)
        except Exception as e:
            self.logger.warning(f"Failed to fetch user email for {pending.provider.value}: {e}")

        self._emit(AuthEvent(
            type=AuthEventType.AUTH_SUCCESS,
            provider=pending.provider,
            tokens=tokens,
            email=email,
            source_id=pending.source_id,
        ))
        self.logger.info(f"Connected to {pending.provider.value}")
        return tokens

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    def _token_request_body(self, provider: ProviderType, **fields: str) -> Dict[str, str]:
        credentials = self._credentials(provider)
        if not credentials.client_id:
            raise OAuthConfigurationError(f"OAuth client ID not configured for {provider.value}")
        body = {'client_id': credentials.client_id}
        body.update(fields)
        if credentials.client_secret:
            body['client_secret'] = credentials.client_secret
        return body

    @staticmethod
    def _describe_error(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(payload, dict):
            return payload.get('error_description') or payload.get('error') or f"HTTP {response.status_code}"
        return f"HTTP {response.status_code}"

    def _token_from_payload(self, provider: ProviderType, payload: Dict[str, Any],
                            previous_refresh_token: Optional[str] = None) -> OAuthTokenData:
        now = datetime.now(pytz.UTC)
        expires_in = int(payload.get('expires_in') or 3600)
        return OAuthTokenData(
            access_token=payload['access_token'],
            refresh_token=payload.get('refresh_token') or previous_refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
            scope=payload.get('scope') or ' '.join(OAUTH_PROVIDERS[provider].scopes),
            token_type=payload.get('token_type') or 'Bearer',
            issued_at=now,
        )

    async def _post_token(self, provider: ProviderType, body: Dict[str, str],
                          tenant_id: Optional[str], error_class) -> Dict[str, Any]:
        config = OAUTH_PROVIDERS[provider]
        url = config.with_tenant(config.token_url, tenant_id or self.settings.outlook_tenant_id)
        label = "exchange" if error_class is TokenExchangeError else "refresh"
        try:
            response = await self._http_client.post(url, data=body, headers={'Accept': 'application/json'})
        except httpx.HTTPError as e:
            raise error_class(f"Token {label} network error: {e}") from e

        if not response.is_success:
            raise error_class(f"Token {label} failed: {self._describe_error(response)}")
        try:
            payload = response.json()
        except ValueError as e:
            raise error_class(f"Token {label} returned malformed JSON") from e
        if not isinstance(payload, dict) or not payload.get('access_token'):
            raise error_class(f"Token {label} response has no access_token")
        return payload

    async def exchange_code(
        self,
        provider,
        code: str,
        code_verifier: str,
        redirect_uri: str,
        tenant_id: Optional[str] = None,
    ) -> OAuthTokenData:
        """Exchange an authorization code using the redirect URI of the flow.

        Raises:
            TokenExchangeError: On any non-2xx or unreadable response
        """
        provider = ProviderType(provider)
        body = self._token_request_body(
            provider,
            grant_type='authorization_code',
            code=code,
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
        )
        payload = await self._post_token(provider, body, tenant_id, TokenExchangeError)
        return self._token_from_payload(provider, payload)

    async def fetch_user_email(self, provider, access_token: str) -> Optional[str]:
        """Look up the account email (Google ``email``, Graph ``mail``/``userPrincipalName``)."""
        provider = ProviderType(provider)
        config = OAUTH_PROVIDERS[provider]
        if not config.userinfo_url:
            return None
        response = await self._http_client.get(
            config.userinfo_url,
            headers={'Authorization': f'Bearer {access_token}', 'Accept': 'application/json'},
        )
        response.raise_for_status()
        payload = response.json()
        if provider == ProviderType.OUTLOOK:
            return payload.get('mail') or payload.get('userPrincipalName')
        return payload.get('email')

    async def refresh_access_token(
        self,
        provider,
        refresh_token: str,
        tenant_id: Optional[str] = None,
    ) -> OAuthTokenData:
        """Obtain a new access token. Keeps ``refresh_token`` unless rotated.

        Raises:
            TokenRefreshError: If the refresh is rejected
        """
        provider = ProviderType(provider)
        body = self._token_request_body(provider, grant_type='refresh_token', refresh_token=refresh_token)
        payload = await self._post_token(provider, body, tenant_id, TokenRefreshError)
        tokens = self._token_from_payload(provider, payload, previous_refresh_token=refresh_token)
        self._emit(AuthEvent(type=AuthEventType.TOKEN_REFRESHED, provider=provider, tokens=tokens))
        self.logger.info(f"Refreshed {provider.value} access token")
        return tokens

    def is_token_expired(self, tokens: OAuthTokenData) -> bool:
        return tokens.is_expired(self.settings.token_refresh_buffer_seconds)

    @staticmethod
    def can_refresh_token(tokens: OAuthTokenData) -> bool:
        return bool(tokens.refresh_token)

    async def ensure_valid_token(
        self,
        provider,
        tokens: OAuthTokenData,
        tenant_id: Optional[str] = None,
    ) -> OAuthTokenData:
        """Return ``tokens`` unchanged while valid, else a refreshed replacement.

        Raises:
            TokenRefreshError: If expired and not refreshable
        """
        if not self.is_token_expired(tokens):
            return tokens
        if not self.can_refresh_token(tokens):
            raise TokenRefreshError("Token expired and no refresh token available")
        return await self.refresh_access_token(provider, tokens.refresh_token, tenant_id)

    async def revoke_tokens(self, provider, tokens: OAuthTokenData) -> None:
        """Revoke at the provider where supported. Failures are not fatal."""
        provider = ProviderType(provider)
        config = OAUTH_PROVIDERS[provider]
        if config.revoke_url:
            try:
                response = await self._http_client.post(config.revoke_url, params={'token': tokens.access_token})
                if not response.is_success:
                    self.logger.warning(f"Token revocation returned HTTP {response.status_code}")
            except httpx.HTTPError as e:
                self.logger.warning(f"Token revocation failed: {e}")
        self._emit(AuthEvent(type=AuthEventType.DISCONNECTED, provider=provider))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Stop the listener and clear pending requests and listeners."""
        await self._stop_listener()
        self._pending.clear()
        self._listeners.clear()
        if self._owns_client:
            await self._http_client.aclose()
