"""Settings loading from the environment and validation rules."""

import pytest
from pydantic import ValidationError

from iamcore.config import Settings, get_settings, reset_settings_cache


class TestFromEnv:
    def test_env_names_map_to_fields(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_SESSIONS", "3")
        monkeypatch.setenv("OAUTH_REQUIRE_STATE", "false")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
        settings = Settings.from_env()
        assert settings.max_concurrent_sessions == 3
        assert settings.oauth_require_state is False
        assert settings.redis_url == "redis://cache:6379/0"

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LOCKOUT_MAX_ATTEMPTS", raising=False)
        settings = Settings.from_env()
        assert settings.lockout_max_attempts == 5
        assert settings.lockout_duration_minutes == 30
        assert settings.max_trusted_devices == 5
        assert settings.totp_window == 1

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        (tmp_path / ".env").write_text("MFA_ISSUER=Acme Identity\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("MFA_ISSUER", raising=False)
        assert Settings.from_env().mfa_issuer == "Acme Identity"

    def test_environment_wins_over_dotenv(self, monkeypatch, tmp_path):
        (tmp_path / ".env").write_text("MFA_ISSUER=From File\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("MFA_ISSUER", "From Env")
        assert Settings.from_env().mfa_issuer == "From Env"

    def test_cached_settings_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first
        reset_settings_cache()


class TestValidation:
    def test_password_bounds(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, password_min_length=20, password_max_length=12)

    def test_memory_cost_raised_to_lane_minimum(self):
        settings = Settings(
            jwt_secret="x" * 40, password_hash_parallelism=4, password_hash_memory_cost=8
        )
        assert settings.password_hash_memory_cost == 32

    @pytest.mark.parametrize("field,value", [("totp_window", 11), ("max_concurrent_sessions", 0)])
    def test_out_of_range(self, field, value):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, **{field: value})


class TestSecrets:
    def test_refresh_secret_derived(self):
        settings = Settings(jwt_secret="x" * 40)
        assert settings.refresh_signing_secret != settings.jwt_secret
        assert len(settings.refresh_signing_secret) == 64

    def test_explicit_refresh_secret(self):
        settings = Settings(jwt_secret="x" * 40, jwt_refresh_secret="y" * 40)
        assert settings.refresh_signing_secret == "y" * 40

    def test_generated_jwt_secret_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings()
        assert len(first.jwt_secret) >= 32
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
        assert Settings().jwt_secret == first.jwt_secret
