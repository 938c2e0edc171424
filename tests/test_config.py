import os
import stat

import pytest
from pydantic import ValidationError

from persistlogin.config import Settings, get_settings, reset_settings_cache


class TestSettingsDefaults:
    def test_persistence_defaults(self):
        settings = Settings(persist_secret="x" * 40)
        assert settings.automatic is True
        assert settings.use_fingerprint is True
        assert settings.persistent_id == "persistent"
        assert settings.cookie_expires == 7
        assert settings.cookie_name == "persist"
        assert settings.roles == set()
        assert settings.cookie_secure is False
        assert settings.cookie_samesite is None
        assert settings.hash_algorithm == "sha256"

    def test_cookie_max_age_is_days_in_seconds(self):
        settings = Settings(persist_secret="x" * 40, cookie_expires=2)
        assert settings.cookie_max_age == 2 * 86400


class TestSettingsFromEnv:
    def test_reads_env_names(self, monkeypatch):
        monkeypatch.setenv("PERSIST_AUTOMATIC", "false")
        monkeypatch.setenv("PERSIST_COOKIE_NAME", "keepme")
        monkeypatch.setenv("PERSIST_COOKIE_EXPIRES", "30")
        monkeypatch.setenv("PERSIST_ROLES", "editor, admin ,")
        monkeypatch.setenv("PERSIST_COOKIE_SAMESITE", "Strict")
        settings = Settings.from_env()
        assert settings.automatic is False
        assert settings.cookie_name == "keepme"
        assert settings.cookie_expires == 30
        assert settings.roles == {"editor", "admin"}
        assert settings.cookie_samesite == "strict"

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("PERSIST_COOKIE_NAME", "changed")
        assert get_settings().cookie_name != "changed"
        reset_settings_cache()
        assert get_settings().cookie_name == "changed"
        reset_settings_cache()


class TestSettingsValidation:
    def test_roles_accept_list(self):
        settings = Settings(persist_secret="x" * 40, roles=["a", " b "])
        assert settings.roles == {"a", "b"}

    def test_cookie_expires_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(persist_secret="x" * 40, cookie_expires=0)

    def test_hash_algorithm_must_exist(self):
        with pytest.raises(ValidationError):
            Settings(persist_secret="x" * 40, hash_algorithm="rot13")

    @pytest.mark.parametrize("algorithm", ["sha512", "sha3_384", "blake2b"])
    def test_hash_algorithm_must_fit_grant_columns(self, algorithm):
        with pytest.raises(ValidationError):
            Settings(persist_secret="x" * 40, hash_algorithm=algorithm)

    @pytest.mark.parametrize("algorithm", ["sha1", "sha224", "SHA3_256", "blake2s"])
    def test_short_hash_algorithms_are_accepted(self, algorithm):
        settings = Settings(persist_secret="x" * 40, hash_algorithm=algorithm)
        assert settings.hash_algorithm == algorithm.lower()

    def test_samesite_values_are_checked(self):
        with pytest.raises(ValidationError):
            Settings(persist_secret="x" * 40, cookie_samesite="sometimes")


class TestPersistSecret:
    def test_generated_secret_is_persisted_and_reused(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings(persist_secret="")
        secret_path = tmp_path / ".persist_secret"
        assert secret_path.read_text() == first.persist_secret
        assert stat.S_IMODE(os.stat(secret_path).st_mode) == 0o600
        second = Settings()
        assert second.persist_secret == first.persist_secret

    def test_explicit_secret_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        settings = Settings(persist_secret="explicit")
        assert settings.persist_secret == "explicit"
        assert not (tmp_path / ".persist_secret").exists()
