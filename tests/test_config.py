"""Settings loading, environment presets and fail-fast runtime construction."""

from unittest.mock import patch

import pytest

from conftest import make_settings
from portcullis.config import Environment, Settings, get_settings, reset_settings_cache
from portcullis.service.errors import ConfigurationError
from portcullis.service.presets import CSP_REPORT_PATH, cors_config_for, csp_config_for
from portcullis.service.runtime import Runtime, _mask_url_password


@pytest.fixture
def clean_cwd(tmp_path, monkeypatch):
    # from_env also reads ./.env; keep a developer's file out of the picture
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestFromEnv:
    def test_reads_environment(self, clean_cwd, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", " Staging ")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("CORS_ALLOW_METHODS", '["GET", "POST"]')
        monkeypatch.setenv("API_KEY_MAX_PER_PRINCIPAL", "3")
        settings = Settings.from_env()
        assert settings.environment == Environment.STAGING
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.cors_allow_methods == ["GET", "POST"]
        assert settings.api_key_max_per_principal == 3

    def test_dotenv_file_is_read(self, clean_cwd, monkeypatch):
        monkeypatch.delenv("JWT_ISSUER", raising=False)
        (clean_cwd / ".env").write_text("JWT_ISSUER=from-dotenv\n")
        assert Settings.from_env().jwt_issuer == "from-dotenv"

    def test_process_env_beats_dotenv(self, clean_cwd, monkeypatch):
        (clean_cwd / ".env").write_text("JWT_ISSUER=from-dotenv\n")
        monkeypatch.setenv("JWT_ISSUER", "from-env")
        assert Settings.from_env().jwt_issuer == "from-env"

    def test_invalid_value_is_configuration_error(self, clean_cwd, monkeypatch):
        monkeypatch.setenv("API_KEY_PREFIX", "Not_Valid")
        with pytest.raises(ConfigurationError) as exc:
            Settings.from_env()
        assert exc.value.setting == "api_key_prefix"

    def test_csp_directives_json(self, clean_cwd, monkeypatch):
        monkeypatch.setenv("CSP_DIRECTIVES", '{"scriptSrc": "\'self\'", "imgSrc": ["https:"]}')
        settings = Settings.from_env()
        assert settings.csp_directives == {"scriptSrc": ["'self'"], "imgSrc": ["https:"]}
        monkeypatch.setenv("CSP_DIRECTIVES", "[1, 2]")
        with pytest.raises(ConfigurationError):
            Settings.from_env()

    def test_csp_directives_accept_booleans(self, clean_cwd, monkeypatch):
        monkeypatch.setenv("CSP_DIRECTIVES", '{"upgradeInsecureRequests": true, "imgSrc": ["https:"]}')
        settings = Settings.from_env()
        assert settings.csp_directives == {"upgradeInsecureRequests": True, "imgSrc": ["https:"]}
        assert csp_config_for(settings).directives["upgradeInsecureRequests"] is True
        monkeypatch.setenv("CSP_DIRECTIVES", '{"imgSrc": 5}')
        with pytest.raises(ConfigurationError) as exc:
            Settings.from_env()
        assert exc.value.setting == "csp_directives"

    def test_get_settings_is_cached(self, clean_cwd, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first

    def test_test_mode_gets_ephemeral_secret(self, tmp_path):
        settings = make_settings(tmp_path, jwt_secret=None)
        assert settings.jwt_secret
        assert settings.is_development


class TestPresets:
    def test_development_allows_local_origins(self, tmp_path):
        settings = make_settings(tmp_path, environment="development")
        cors = cors_config_for(settings)
        csp = csp_config_for(settings)
        assert "http://localhost:5173" in cors.origins
        assert csp.report_only is True
        assert csp.report_uri is None

    def test_production_enforces(self, tmp_path):
        settings = make_settings(tmp_path, environment="production")
        cors = cors_config_for(settings)
        csp = csp_config_for(settings)
        assert cors.origins == []
        assert cors.production is True
        assert csp.report_only is False
        assert csp.report_uri == CSP_REPORT_PATH
        assert csp.upgrade_insecure_requests is True

    def test_staging_reports_only(self, tmp_path):
        csp = csp_config_for(make_settings(tmp_path, environment="staging"))
        assert csp.report_only is True
        assert csp.report_uri == CSP_REPORT_PATH

    def test_explicit_settings_win(self, tmp_path):
        settings = make_settings(
            tmp_path,
            environment="production",
            cors_allow_origins=["https://app.example"],
            csp_report_only=True,
            csp_report_uri="https://reports.example/csp",
            csp_upgrade_insecure_requests=False,
        )
        cors = cors_config_for(settings)
        csp = csp_config_for(settings)
        assert cors.origins == ["https://app.example"]
        assert csp.report_only is True
        assert csp.report_uri == "https://reports.example/csp"
        assert csp.upgrade_insecure_requests is False


class TestRuntimeConstruction:
    def test_missing_secret_outside_test_mode(self, tmp_path):
        settings = make_settings(tmp_path, test_mode=False, jwt_secret=None)
        with pytest.raises(ConfigurationError) as exc:
            Runtime(settings, connect_cache=False)
        assert exc.value.setting == "jwt_secret"

    def test_wildcard_with_credentials_fails_at_startup(self, tmp_path):
        settings = make_settings(tmp_path, cors_allow_origins=["*"], cors_allow_credentials=True)
        with pytest.raises(ConfigurationError):
            Runtime(settings, connect_cache=False)

    def test_bad_csp_override_fails_at_startup(self, tmp_path):
        settings = make_settings(tmp_path, csp_directives={"img-src": ["'self'; script-src *"]})
        with pytest.raises(ConfigurationError):
            Runtime(settings, connect_cache=False)

    def test_redis_failure_without_fallback(self, tmp_path):
        settings = make_settings(tmp_path, test_mode=False, allow_redis_fallback_dev=False)
        with patch("portcullis.service.runtime.RedisCache") as cache_cls:
            cache_cls.return_value.verify_connection.side_effect = ConnectionError("refused")
            with pytest.raises(ConfigurationError) as exc:
                Runtime(settings)
        assert exc.value.setting == "redis_url"

    def test_redis_failure_with_fallback(self, tmp_path):
        settings = make_settings(tmp_path, test_mode=False, allow_redis_fallback_dev=True)
        with patch("portcullis.service.runtime.RedisCache") as cache_cls:
            cache_cls.return_value.verify_connection.side_effect = ConnectionError("refused")
            runtime = Runtime(settings)
        assert runtime.cache is None
        assert runtime.limiter.cache is None

    def test_sync_cache_in_test_mode(self, tmp_path):
        settings = make_settings(tmp_path)
        with patch("portcullis.service.runtime.SyncRedisCache") as cache_cls:
            runtime = Runtime(settings)
        assert runtime.cache is cache_cls.return_value
        cache_cls.assert_called_once_with(settings.redis_url)

    def test_components_share_the_store(self, runtime, memory_store):
        assert runtime.vault.store is memory_store
        assert runtime.authenticator.usage is runtime.usage
        assert runtime.principals.verifier is runtime.verifier

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None
