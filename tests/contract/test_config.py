"""
Contract tests for environment configuration.
"""

from backend.config import OPENAI_MODEL, OPENSKY_API_URL, load_settings


class TestSettings:
    """Test settings derived from environment variables."""

    def test_defaults(self):
        settings = load_settings({})

        assert settings.port == 8080
        assert settings.opensky_api_url == OPENSKY_API_URL
        assert settings.openai_model == OPENAI_MODEL
        assert settings.region_ids == ("taiwan", "socal", "europe")
        assert settings.default_region == "taiwan"
        assert not settings.ai_enabled

    def test_anonymous_timing(self):
        settings = load_settings({})

        assert not settings.has_opensky_auth
        assert settings.poll_interval == 15
        assert settings.min_request_gap == 6

    def test_oauth_timing(self):
        settings = load_settings({"OPENSKY_CLIENT_ID": "id", "OPENSKY_CLIENT_SECRET": "secret"})

        assert settings.has_oauth
        assert settings.poll_interval == 10
        assert settings.min_request_gap == 3

    def test_basic_auth(self):
        settings = load_settings({"OPENSKY_USERNAME": "user", "OPENSKY_PASSWORD": "pass"})

        assert settings.has_basic_auth
        assert not settings.has_oauth
        assert settings.poll_interval == 10

    def test_empty_values_count_as_unset(self):
        settings = load_settings({"OPENAI_API_KEY": "", "OPENSKY_CLIENT_ID": ""})

        assert not settings.ai_enabled
        assert not settings.has_opensky_auth

    def test_ai_enabled(self):
        settings = load_settings({"OPENAI_API_KEY": "sk-test", "OPENAI_MODEL": "gpt-4o-mini"})

        assert settings.ai_enabled
        assert settings.openai_model == "gpt-4o-mini"

    def test_region_subset(self):
        settings = load_settings({"SWARM_REGIONS": "Europe, mars ,taiwan,europe"})

        assert settings.region_ids == ("europe", "taiwan")
        assert list(settings.regions) == ["europe", "taiwan"]
        assert settings.default_region == "europe"

    def test_no_valid_regions_falls_back(self):
        settings = load_settings({"SWARM_REGIONS": "mars"})
        assert settings.region_ids == ("taiwan", "socal", "europe")
