"""
Tests for config.settings: YAML loading with ${VAR} substitution.
"""
import pytest

from config.settings import Settings, get_settings, load_settings, reset_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


def _write(tmp_path, text: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(text)
    return str(path)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings.app_name == "FollowDesk"
        assert settings.followups.due_days == {1: 7, 2: 14, 3: 21}
        assert settings.email.max_attempts == 5
        assert settings.email.backoff_base_seconds == 300
        assert settings.notifications.delivery == "sync"
        assert settings.todos.expire_after_days == 7

    def test_sections_override_defaults(self, tmp_path):
        path = _write(tmp_path, """
app_name: Desk
followups:
  due_days: {1: 3, 2: 6}
  max_sequence: 2
email:
  batch_size: 25
  transport: smtp
  smtp:
    host: mail.internal
    port: 2525
    use_tls: false
notifications:
  delivery: queue
  max_per_user_per_day: 5
""")
        settings = load_settings(path)
        assert settings.app_name == "Desk"
        assert settings.followups.due_days == {1: 3, 2: 6}
        assert settings.followups.max_sequence == 2
        assert settings.followups.snooze_days == 7
        assert settings.email.batch_size == 25
        assert settings.email.smtp.host == "mail.internal"
        assert settings.email.smtp.port == 2525
        assert settings.email.smtp.use_tls is False
        assert settings.notifications.delivery == "queue"
        assert settings.notifications.max_per_user_per_day == 5

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FD_SECRET", "s3cret")
        monkeypatch.setenv("FD_DEBUG", "true")
        monkeypatch.delenv("FD_UNSET", raising=False)
        path = _write(tmp_path, """
cron_secret: ${FD_SECRET}
debug: ${FD_DEBUG}
database:
  url: ${FD_UNSET}
""")
        settings = load_settings(path)
        assert settings.cron_secret == "s3cret"
        assert settings.debug is True
        # unknown variables are left in place
        assert settings.database.url == "${FD_UNSET}"

    def test_directory_users(self, tmp_path):
        path = _write(tmp_path, """
directory:
  default_manager_id: boss
  users:
    u1: {email: a@example.com, manager_id: boss}
""")
        settings = load_settings(path)
        assert settings.directory.type == "static"
        assert settings.directory.default_manager_id == "boss"
        assert settings.directory.users["u1"]["email"] == "a@example.com"


class TestCache:
    def test_get_settings_caches_loaded(self, tmp_path):
        loaded = load_settings(_write(tmp_path, "app_name: Cached\n"))
        assert get_settings() is loaded

    def test_env_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FOLLOWDESK_CONFIG", _write(tmp_path, "app_name: FromEnv\n"))
        assert get_settings().app_name == "FromEnv"

    def test_reset(self, tmp_path):
        load_settings(_write(tmp_path, "app_name: Old\n"))
        reset_settings()
        assert isinstance(get_settings(), Settings)
        assert get_settings().app_name != "Old"
