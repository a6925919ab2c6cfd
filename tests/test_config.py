"""
Unit tests for settings loading, the tracked-conversation file, the
``wa-recap-tracked`` commands and the client factory resolver.
"""

import json
from pathlib import Path

import pytest

from historysync import manage_tracked
from historysync.config import (
    build_settings,
    get_tracked_file_path,
    load_config,
    load_tracked_file,
    normalize_tracked_ids,
    resolve_tracked_ids,
)
from historysync.main import load_client_factory

BASE_TOML = """
[database]
dsn = "postgresql:///wa_recap_test"

[recap]
identity_store_path = "/var/lib/wa-recap/identity.db.enc"
{extra}
"""


@pytest.fixture
def write_config(tmp_path):
    def _write(extra='tracked_conversation_ids = ["a@s.whatsapp.net"]'):
        path = tmp_path / "settings.toml"
        path.write_text(BASE_TOML.format(extra=extra), encoding="utf-8")
        return path

    return _write


def _fake_secret(name):
    return f"secret-for-{name}"


class TestLoadConfig:
    def test_valid_config(self, write_config):
        path = write_config()
        config = load_config(path)
        assert config["database"]["dsn"] == "postgresql:///wa_recap_test"
        assert config["_meta_config_path"] == str(path)

    def test_missing_identity_path(self, tmp_path):
        path = tmp_path / "settings.toml"
        path.write_text('[database]\ndsn = "x"\n[recap]\n', encoding="utf-8")
        with pytest.raises(KeyError, match="recap.identity_store_path"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")


class TestTrackedIds:
    @pytest.mark.parametrize("value, expected", [
        (None, set()),
        ("a, b,,c ", {"a", "b", "c"}),
        (["a", " b "], {"a", "b"}),
    ])
    def test_normalize(self, value, expected):
        assert normalize_tracked_ids(value) == expected

    def test_normalize_rejects_other_types(self):
        with pytest.raises(ValueError):
            normalize_tracked_ids(42)

    def test_union_with_tracked_file(self, write_config):
        config = load_config(write_config())
        get_tracked_file_path(config).write_text(
            json.dumps({"tracked": {"b@s.whatsapp.net": "Bob"}}), encoding="utf-8"
        )
        assert resolve_tracked_ids(config) == {"a@s.whatsapp.net", "b@s.whatsapp.net"}

    def test_empty_set_rejected(self, write_config):
        config = load_config(write_config(extra=""))
        with pytest.raises(ValueError, match="No tracked conversations"):
            resolve_tracked_ids(config)

    def test_tracked_file_beside_settings(self, write_config, tmp_path):
        config = load_config(write_config())
        assert get_tracked_file_path(config) == tmp_path.resolve() / "tracked_conversations.json"

    def test_explicit_tracked_file_path(self, write_config, tmp_path):
        target = tmp_path / "elsewhere" / "tracked.json"
        config = load_config(write_config(extra=f'tracked_file_path = "{target}"'))
        assert get_tracked_file_path(config) == target

    def test_malformed_tracked_file_ignored(self, tmp_path):
        path = tmp_path / "tracked_conversations.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_tracked_file(path) == {}


class TestBuildSettings:
    def test_defaults(self, write_config):
        settings = build_settings(load_config(write_config()), secret_loader=_fake_secret)

        assert settings.tracked_conversation_ids == frozenset({"a@s.whatsapp.net"})
        assert settings.identity_store_path == Path("/var/lib/wa-recap/identity.db.enc")
        assert settings.summarizer_api_key == "secret-for-anthropic_api_key"
        assert settings.failure_policy == "isolate"
        assert settings.disconnect_timeout == 10.0
        assert settings.system_prompt_path is None

    def test_api_key_hidden_from_repr(self, write_config):
        settings = build_settings(load_config(write_config()), secret_loader=_fake_secret)
        assert "secret-for" not in repr(settings)

    def test_abort_policy(self, write_config):
        config = load_config(write_config(
            extra='tracked_conversation_ids = "a"\nfailure_policy = "ABORT"'
        ))
        assert build_settings(config, secret_loader=_fake_secret).failure_policy == "abort"

    def test_invalid_policy(self, write_config):
        config = load_config(write_config(
            extra='tracked_conversation_ids = "a"\nfailure_policy = "retry"'
        ))
        with pytest.raises(ValueError, match="failure_policy"):
            build_settings(config, secret_loader=_fake_secret)

    def test_non_positive_disconnect_timeout(self, write_config):
        config = load_config(write_config(
            extra='tracked_conversation_ids = "a"\ndisconnect_timeout_seconds = 0'
        ))
        with pytest.raises(ValueError, match="disconnect_timeout_seconds"):
            build_settings(config, secret_loader=_fake_secret)


class TestManageTracked:
    def test_add_show_remove(self, write_config, capsys):
        path = write_config()
        argv = ["--config", str(path)]

        assert manage_tracked.main(argv + ["add", "b@s.whatsapp.net", "--label", "Bob"]) == 0
        assert manage_tracked.main(argv + ["show"]) == 0
        shown = capsys.readouterr().out
        assert "a@s.whatsapp.net  (settings.toml)" in shown
        assert "b@s.whatsapp.net  Bob" in shown

        assert manage_tracked.main(argv + ["remove", "b@s.whatsapp.net"]) == 0
        tracked = json.loads((path.parent / "tracked_conversations.json").read_text())
        assert tracked == {"tracked": {}}

    def test_remove_configured_id_refused(self, write_config, capsys):
        path = write_config()
        assert manage_tracked.main(["--config", str(path), "remove", "a@s.whatsapp.net"]) == 1
        assert "settings.toml" in capsys.readouterr().out

    def test_remove_unknown_id(self, write_config):
        path = write_config()
        assert manage_tracked.main(["--config", str(path), "remove", "zed@s.whatsapp.net"]) == 1

    def test_show_with_nothing_tracked(self, write_config):
        path = write_config(extra="")
        assert manage_tracked.main(["--config", str(path), "show"]) == 1

    def test_add_keeps_existing_label(self, write_config):
        config = load_config(write_config())
        manage_tracked.add_tracked(config, "b@s.whatsapp.net", "Bob")
        manage_tracked.add_tracked(config, "b@s.whatsapp.net")
        assert load_tracked_file(get_tracked_file_path(config)) == {"b@s.whatsapp.net": "Bob"}


class TestClientFactory:
    def test_resolves_module_attribute(self):
        assert load_client_factory("json:loads") is json.loads

    @pytest.mark.parametrize("target", ["", "json", "json:", ":loads"])
    def test_malformed_reference(self, target):
        with pytest.raises(ValueError):
            load_client_factory(target)

    def test_non_callable_rejected(self):
        with pytest.raises(ValueError, match="not callable"):
            load_client_factory("json:__name__")
