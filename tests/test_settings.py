# tests/test_settings.py
from agi_core.infrastructure.config.settings import Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({}, dotenv=False)

        assert settings.model == "gpt-4o"
        assert settings.max_steps == 5
        assert settings.fast_track_enabled
        assert settings.fast_track_history == 3
        assert not settings.langfuse.enabled

    def test_values_from_environment(self):
        settings = Settings.from_env({
            "AGI_MODEL": "gemini-2.5-flash",
            "AGI_ALT_MODEL": "",
            "AGI_MAX_STEPS": "8",
            "AGI_FAST_TRACK_ENABLED": "false",
            "AGI_USER_NAME": "Bob",
            "LANGFUSE_PUBLIC_KEY": "pk",
            "LANGFUSE_SECRET_KEY": "sk",
            "SPOTIFY_CLIENT_ID": "id"
        }, dotenv=False)

        assert settings.model == "gemini-2.5-flash"
        assert settings.alt_model is None
        assert settings.max_steps == 8
        assert not settings.fast_track_enabled
        assert settings.user_name == "Bob"
        assert settings.langfuse.enabled
        assert settings.has("SPOTIFY_CLIENT_ID")
        assert settings.missing(("SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET")) == ("SPOTIFY_CLIENT_SECRET",)

    def test_enabled_services(self):
        services = Settings(credentials={"OPENAI_API_KEY": "sk"}).enabled_services()

        assert services["openai"]
        assert not services["anthropic"]
        assert not services["langfuse"]

    def test_state_idle_timeout(self):
        assert Settings().state_idle_timeout().total_seconds() == 3600
        assert Settings.from_env({"AGI_STATE_IDLE_SECONDS": "0"}, dotenv=False).state_idle_timeout() is None
