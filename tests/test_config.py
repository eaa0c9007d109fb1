import pytest
from pydantic import ValidationError

from conftest import make_settings


def test_defaults():
    settings = make_settings()

    assert settings.oauth_callback_host == "127.0.0.1"
    assert settings.callback_ports == list(range(42813, 42824))
    assert settings.token_refresh_buffer_seconds == 300
    assert settings.oauth_pending_ttl_seconds == 600
    assert settings.default_max_results == 2500


def test_redirect_uri_for_port():
    settings = make_settings(oauth_callback_path="oauth/callback")

    assert settings.redirect_uri_for_port(42815) == "http://127.0.0.1:42815/oauth/callback"


def test_port_range_must_not_be_empty():
    with pytest.raises(ValidationError):
        make_settings(oauth_callback_port_start=5000, oauth_callback_port_end=4999)


def test_log_level_normalized():
    assert make_settings(log_level="debug").log_level == "DEBUG"

    with pytest.raises(ValidationError):
        make_settings(log_level="chatty")


def test_client_secret_read_from_file(tmp_path):
    secret = tmp_path / "google_secret"
    secret.write_text("s3cret\n")

    settings = make_settings(google_client_secret_file=str(secret))

    assert settings.google_client_secret == "s3cret"


def test_missing_secret_file(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        make_settings(google_client_secret_file=str(tmp_path / "missing"))
