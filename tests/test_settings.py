"""Tests for the YAML settings loader."""
import textwrap
import pytest

from config.settings import Settings, load_settings


def write(tmp_path, body: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert isinstance(settings, Settings)
        assert settings.queue.base_delay_s == 1.0
        assert settings.queue.max_retries == 3
        assert settings.circuit.threshold == 5
        assert settings.credentials.cooldown_s == 1200.0
        assert settings.poller.max_age_minutes == 60.0
        assert settings.downstream.type == "recording"

    def test_sections_and_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RELAY_KEYS", "key-a, key-b")
        monkeypatch.setenv("BOT_TOKEN", "123:abc")
        path = write(tmp_path, """
            pipeline:
              retry_count: 4
              stage_overrides:
                send: {max_attempts: 5, timeout_s: 10}
            queue:
              base_delay_s: 2
              max_retries: 5
            circuit:
              threshold: 3
            credentials:
              keys: ${RELAY_KEYS}
              rotate_on: unhealthy
            downstream:
              type: telegram
              bot_token: ${BOT_TOKEN}
            storage:
              seen_backend: file
              data_dir: /tmp/relay
            topics:
              launches:
                destination: "-100123:42"
                filters:
                  - {type: keyword, value: launch}
              muted:
                destination: "-100999"
                enabled: false
        """)
        settings = load_settings(path)

        assert settings.pipeline.policy_args("send") == (5, 10.0)
        assert settings.pipeline.policy_args("render") == (4, 30.0)
        assert settings.queue.base_delay_s == 2.0
        assert settings.queue.max_retries == 5
        assert settings.circuit.threshold == 3
        assert settings.credentials.keys == ["key-a", "key-b"]
        assert settings.credentials.rotate_on == "unhealthy"
        assert settings.downstream.bot_token == "123:abc"
        assert settings.storage.seen_backend == "file"
        assert settings.topics["launches"].destination == "-100123:42"
        assert settings.topics["launches"].filters == [{"type": "keyword", "value": "launch"}]
        assert settings.topics["muted"].enabled is False

    def test_unset_env_var_left_verbatim(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        path = write(tmp_path, """
            upstream:
              base_url: ${NOT_SET_ANYWHERE}
        """)
        assert load_settings(path).upstream.base_url == "${NOT_SET_ANYWHERE}"

    def test_invalid_rotate_on(self, tmp_path):
        path = write(tmp_path, """
            credentials:
              rotate_on: sometimes
        """)
        with pytest.raises(ValueError):
            load_settings(path)

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = write(tmp_path, "app_name: FromEnv\n")
        monkeypatch.setenv("RELAY_CONFIG", path)
        assert load_settings().app_name == "FromEnv"
