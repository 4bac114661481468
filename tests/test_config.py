"""
Tests for configuration and startup checks
"""

import pytest
from unittest.mock import patch

from callbridge.core.config import Settings


class TestSettings:
    """Tests for settings parsing"""

    def test_missing_required(self):
        settings = Settings(_env_file=None, twilio_account_sid="AC1", twilio_auth_token=None, elevenlabs_api_key="")
        assert settings.missing_required() == ["TWILIO_AUTH_TOKEN", "ELEVENLABS_API_KEY"]

    def test_derived_urls(self):
        settings = Settings(_env_file=None, server_domain="calls.example.org")
        assert settings.public_base_url == "https://calls.example.org"
        assert settings.media_stream_url == "wss://calls.example.org/media-stream"
        assert settings.outbound_media_stream_url == "wss://calls.example.org/outbound-media-stream"

    def test_agent_ids_list(self):
        settings = Settings(_env_file=None, elevenlabs_agent_ids="a1, a2,,")
        assert settings.default_agent_ids == ["a1", "a2"]


class TestStartupCheck:
    """The process refuses to start without carrier and voice credentials"""

    def test_exits_when_credentials_missing(self):
        from callbridge import main

        with patch.object(main.settings, "twilio_auth_token", None):
            with pytest.raises(SystemExit) as exc_info:
                main.check_required_settings()
        assert exc_info.value.code == 1

    def test_passes_when_configured(self):
        from callbridge import main

        main.check_required_settings()
