# src/calsync_providers/config.py
"""Configuration management using Pydantic Settings."""

import os
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Public desktop-app client identifiers. Installed applications cannot keep a
# secret, PKCE protects the code exchange; users may override both.
DEFAULT_GOOGLE_CLIENT_ID = "707820255464-c72a7md4omp101t4jtncq4vempt81stk.apps.googleusercontent.com"
DEFAULT_OUTLOOK_CLIENT_ID = "e1727739-0a4f-4827-a743-f7933cb3f6bf"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # OAuth clients
    google_client_id: str = Field(default=DEFAULT_GOOGLE_CLIENT_ID, description="Google OAuth Client ID")
    google_client_secret: Optional[str] = Field(None, description="Google OAuth Client Secret (optional)")
    google_client_secret_file: Optional[str] = Field(None, description="Path to file containing Google Client Secret")
    outlook_client_id: str = Field(default=DEFAULT_OUTLOOK_CLIENT_ID, description="Microsoft application (client) ID")
    outlook_tenant_id: str = Field(default="common", description="Default Microsoft tenant")

    # Loopback callback listener
    oauth_callback_host: str = Field(default="127.0.0.1", description="Loopback bind address")
    oauth_callback_port_start: int = Field(default=42813, ge=1, le=65535)
    oauth_callback_port_end: int = Field(default=42823, ge=1, le=65535)
    oauth_callback_path: str = Field(default="/oauth/callback")
    oauth_legacy_redirect_uri: str = Field(
        default="calsync://oauth-callback",
        description="Custom URI scheme callback used when no loopback listener is reachable"
    )
    oauth_pending_ttl_seconds: int = Field(default=600, ge=1, description="Lifetime of a pending authorization")
    oauth_listener_stop_delay_seconds: float = Field(default=1.0, ge=0)
    token_refresh_buffer_seconds: int = Field(default=300, ge=0, description="Refresh tokens this early")

    # Provider endpoints
    google_api_base: str = Field(default="https://www.googleapis.com/calendar/v3")
    graph_api_base: str = Field(default="https://graph.microsoft.com/v1.0")
    caldav_server_url: str = Field(default="https://caldav.icloud.com/", description="Default CalDAV server URL")

    # Requests
    request_timeout_seconds: int = Field(default=30, ge=1, le=300, description="HTTP request timeout")
    default_max_results: int = Field(default=2500, ge=1, description="Upper bound on events per calendar")

    # Application
    app_name: str = Field(default="calsync-providers", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('oauth_callback_port_end')
    def validate_port_range(cls, v, values):
        """Port range is inclusive and must not be empty."""
        start = values.get('oauth_callback_port_start')
        if start is not None and v < start:
            raise ValueError("oauth_callback_port_end must be >= oauth_callback_port_start")
        return v

    @validator('oauth_callback_path')
    def validate_callback_path(cls, v):
        if not v.startswith('/'):
            return '/' + v
        return v

    def __init__(self, **kwargs):
        """Initialize settings with file-based secret support."""
        secret_file = kwargs.get('google_client_secret_file') or os.getenv('GOOGLE_CLIENT_SECRET_FILE')
        if secret_file:
            kwargs['google_client_secret'] = self._read_credential_file(secret_file)

        super().__init__(**kwargs)

    def _read_credential_file(self, file_path: str) -> str:
        """Read credential from file with proper error handling.

        Args:
            file_path: Path to credential file

        Returns:
            Credential value

        Raises:
            ValueError: If file cannot be read
        """
        try:
            with open(file_path, 'r') as f:
                credential = f.read().strip()
        except FileNotFoundError:
            raise ValueError(f"Credential file not found: {file_path}")
        except PermissionError:
            raise ValueError(f"Permission denied reading credential file: {file_path}")
        if not credential:
            raise ValueError(f"Credential file {file_path} is empty")
        return credential

    @property
    def callback_ports(self) -> List[int]:
        """Loopback ports to try, in ascending order."""
        return list(range(self.oauth_callback_port_start, self.oauth_callback_port_end + 1))

    def redirect_uri_for_port(self, port: int) -> str:
        return f"http://{self.oauth_callback_host}:{port}{self.oauth_callback_path}"


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to an env-style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        return Settings(_env_file=config_file)
    return Settings()
