"""Tests for bootkit.config.

Layer precedence, the sectioned file format, typed access, persistence,
answers overlay and path resolution.
"""

import re

import pytest

from bootkit.config import (
    CONFIG_HEADER,
    ConfigStore,
    FieldSpec,
    env_var_name,
    get_bootkit_home,
    init_config,
    load_config,
    parse_config_text,
    render_config,
    resolve_paths,
    validate_key,
)
from bootkit.errors import ConfigError, ConfigParseError, TypeCoercionError
from bootkit.schemas import ConfigLayer


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "state" / "bootkit.config"


def _store(config_file=None, environ=None, **kwargs):
    return ConfigStore(config_file=config_file, environ=environ if environ is not None else {}, **kwargs)


# =============================================================================
# Keys and file format
# =============================================================================


class TestKeys:
    def test_valid_key(self):
        validate_key("docker.app_port")

    @pytest.mark.parametrize("key", ["name", "a.b.c", ".x", "x.", "sec tion.x", ""])
    def test_invalid_key(self, key):
        with pytest.raises(ConfigError):
            validate_key(key)

    def test_env_var_name(self):
        assert env_var_name("project.name") == "BOOTKIT_PROJECT_NAME"
        assert env_var_name("my-sec.some-field") == "BOOTKIT_MY_SEC_SOME_FIELD"


class TestParseConfigText:
    """Tests for the sectioned key=value format."""

    def test_sections_comments_and_blanks(self):
        text = (
            "# comment\n"
            "; also a comment\n"
            "\n"
            "[project]\n"
            "name = my-app\n"
            "phase=POC\n"
            "[docker]\n"
            "app_port=3000\n"
        )
        assert parse_config_text(text) == {
            "project.name": "my-app",
            "project.phase": "POC",
            "docker.app_port": "3000",
        }

    def test_value_may_contain_equals(self):
        assert parse_config_text("[x]\nurl=a=b\n") == {"x.url": "a=b"}

    def test_unknown_keys_are_kept(self):
        assert parse_config_text("[custom]\nthing=1\n") == {"custom.thing": "1"}

    @pytest.mark.parametrize("text, reason", [
        ("[project\nname=x\n", "unterminated section header"),
        ("[bad section]\n", "invalid section name"),
        ("[project]\njust text\n", "expected key=value"),
        ("[project]\nna me=x\n", "invalid key"),
        ("name=x\n", "outside of a [section]"),
    ])
    def test_malformed_lines_are_reported(self, text, reason):
        with pytest.raises(ConfigParseError, match=re.escape(reason)) as exc_info:
            parse_config_text(text, "cfg")
        assert exc_info.value.path == "cfg"

    def test_render_is_deterministic_and_ordered(self):
        values = {"testing.e2e_framework": "playwright", "zzz.extra": "1", "project.name": "app", "git.default_branch": "main"}
        rendered = render_config(values)

        assert rendered.startswith(CONFIG_HEADER)
        assert rendered.index("[project]") < rendered.index("[git]") < rendered.index("[testing]") < rendered.index("[zzz]")
        assert render_config(dict(reversed(list(values.items())))) == rendered
        assert parse_config_text(rendered) == values


class TestFieldSpec:
    def test_int_bounds(self):
        spec = FieldSpec("int", min=1024, max=65535)
        spec.validate("docker.app_port", "3000")
        with pytest.raises(TypeCoercionError):
            spec.validate("docker.app_port", "80")
        with pytest.raises(TypeCoercionError):
            spec.validate("docker.app_port", "abc")

    def test_choice(self):
        spec = FieldSpec("choice", choices=("npm", "pnpm"))
        spec.validate("packages.package_manager", "npm")
        with pytest.raises(TypeCoercionError, match="one of npm, pnpm"):
            spec.validate("packages.package_manager", "bun")

    def test_bool(self):
        FieldSpec("bool").validate("x.flag", "yes")
        with pytest.raises(TypeCoercionError):
            FieldSpec("bool").validate("x.flag", "maybe")

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            FieldSpec("float")


# =============================================================================
# Store
# =============================================================================


class TestPrecedence:
    """environment > session > file > default, falling through in order."""

    def test_full_fall_through(self, config_file):
        environ = {}
        store = _store(config_file, environ=environ, defaults={"project.name": "default"})
        assert store.get_entry("project.name").layer == ConfigLayer.DEFAULT

        store.set("project.name", "from-file", ConfigLayer.FILE)
        assert store.get("project.name") == "from-file"

        store.set("project.name", "from-answers", ConfigLayer.SESSION)
        assert store.get("project.name") == "from-answers"

        environ["BOOTKIT_PROJECT_NAME"] = "from-env"
        entry = store.get_entry("project.name")
        assert entry.value == "from-env"
        assert entry.layer == ConfigLayer.ENVIRONMENT

        del environ["BOOTKIT_PROJECT_NAME"]
        store.unset("project.name", ConfigLayer.SESSION)
        assert store.get_entry("project.name").layer == ConfigLayer.FILE

    def test_missing_key(self):
        store = _store(defaults={})
        assert store.get("nothing.here") is None
        assert store.get("nothing.here", "fallback") == "fallback"
        assert store.get_entry("nothing.here") is None
        assert not store.has("nothing.here")

    def test_read_only_layers(self):
        store = _store()
        with pytest.raises(ConfigError, match="read-only"):
            store.set("project.name", "x", ConfigLayer.ENVIRONMENT)
        with pytest.raises(ConfigError, match="read-only"):
            store.set("project.name", "x", ConfigLayer.DEFAULT)

    def test_layer_view(self):
        store = _store(environ={"BOOTKIT_DOCKER_APP_PORT": "4000"})
        assert store.layer(ConfigLayer.ENVIRONMENT) == {"docker.app_port": "4000"}
        assert store.layer(ConfigLayer.DEFAULT)["docker.app_port"] == "3000"

    def test_describe_reports_provenance(self):
        store = _store(defaults={"a.x": "1", "a.y": "2"}, schema={})
        store.set("a.y", "3", ConfigLayer.FILE)
        described = {e.key: e.layer for e in store.describe()}
        assert described == {"a.x": ConfigLayer.DEFAULT, "a.y": ConfigLayer.FILE}


class TestTypedAccess:
    def test_get_int(self):
        store = _store()
        assert store.get_int("docker.app_port") == 3000

    def test_get_int_raises_instead_of_defaulting(self):
        store = _store()
        store.set("docker.app_port", "not-a-number")
        with pytest.raises(TypeCoercionError):
            store.get_int("docker.app_port", default=1)

    def test_get_int_default_only_when_absent(self):
        assert _store(defaults={}).get_int("x.y", default=7) == 7

    def test_bool_storage_and_parse(self):
        store = _store()
        store.set("feature.enabled", True)
        assert store.get("feature.enabled") == "true"
        assert store.get_bool("feature.enabled") is True
        store.set("feature.enabled", "off")
        assert store.get_bool("feature.enabled") is False

    def test_multiline_values_rejected(self):
        with pytest.raises(ConfigError, match="single line"):
            _store().set("project.name", "a\nb")


class TestPersistence:
    """Tests for writing the FILE layer."""

    def test_persist_and_reload(self, config_file):
        store = _store(config_file)
        store.set("project.name", "app", ConfigLayer.FILE)
        store.set("docker.app_port", 8080, ConfigLayer.FILE)

        assert store.persist() is True

        reloaded = _store(config_file)
        assert reloaded.get("project.name") == "app"
        assert reloaded.get_int("docker.app_port") == 8080

    def test_session_values_are_not_persisted(self, config_file):
        store = _store(config_file)
        store.set("project.name", "answer", ConfigLayer.SESSION)
        store.set("git.default_branch", "trunk", ConfigLayer.FILE)
        store.persist()

        assert "answer" not in config_file.read_text()

    def test_identical_content_not_rewritten(self, config_file):
        store = _store(config_file)
        store.set("project.name", "app", ConfigLayer.FILE)
        store.persist()
        mtime = config_file.stat().st_mtime_ns

        assert store.persist() is False
        assert config_file.stat().st_mtime_ns == mtime

    def test_schema_violation_writes_nothing(self, config_file):
        store = _store(config_file)
        store.set("docker.app_port", "80", ConfigLayer.FILE)

        with pytest.raises(TypeCoercionError):
            store.persist()
        assert not config_file.exists()

    def test_no_temp_files_left(self, config_file):
        store = _store(config_file)
        store.set("project.name", "app", ConfigLayer.FILE)
        store.persist()
        assert [p.name for p in config_file.parent.iterdir()] == ["bootkit.config"]

    def test_persist_without_backing_file(self):
        with pytest.raises(ConfigError, match="no backing file"):
            _store().persist()

    def test_malformed_file_raises_on_load(self, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text("[project]\nbroken line\n")
        with pytest.raises(ConfigParseError):
            _store(config_file)

    def test_reload_discards_unpersisted(self, config_file):
        store = _store(config_file)
        store.set("project.name", "app", ConfigLayer.FILE)
        store.reload()
        assert not store.has("project.name", ConfigLayer.FILE)

    def test_clear(self):
        store = _store()
        store.set("a.b", "1", ConfigLayer.SESSION)
        store.clear(ConfigLayer.SESSION)
        assert store.layer(ConfigLayer.SESSION) == {}
        with pytest.raises(ConfigError):
            store.clear(ConfigLayer.DEFAULT)


class TestAnswers:
    """Tests for the session-answers overlay."""

    def test_load_answers(self, tmp_path):
        answers = tmp_path / "answers.env"
        answers.write_text(
            "PROJECT_NAME=my-app\n"
            "docker.app_port=4000\n"
            "UNRELATED_VAR=1\n"
            "NODE_VERSION=\n"
        )
        store = _store()

        assert store.load_answers(answers) == 2
        assert store.get_entry("project.name").layer == ConfigLayer.SESSION
        assert store.get("docker.app_port") == "4000"
        assert store.get("packages.node_version") == "20"

    def test_missing_answers_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            _store().load_answers(tmp_path / "nope.env")

    def test_commit_answers(self, tmp_path):
        store = _store()
        store.set("project.name", "x", ConfigLayer.SESSION)
        assert store.commit_answers() == 1
        assert store.layer(ConfigLayer.FILE) == {"project.name": "x"}


# =============================================================================
# Paths and bootstrap
# =============================================================================


class TestPaths:
    def test_defaults(self, tmp_path):
        paths = resolve_paths(tmp_path, environ={})
        assert paths.state_dir == tmp_path.resolve() / ".bootkit"
        assert paths.manifest_path == tmp_path.resolve() / "bootkit-manifest.yaml"
        assert paths.config_file.name == "bootkit.config"
        assert paths.session_log == paths.state_dir / "logs" / "session.log"
        assert paths.backups_dir == paths.state_dir / "backups"

    def test_bootkit_home_env(self, tmp_path):
        home = tmp_path / "custom"
        assert get_bootkit_home(tmp_path, {"BOOTKIT_HOME": str(home)}) == home

    def test_manifest_env_relative_to_root(self, tmp_path):
        paths = resolve_paths(tmp_path, environ={"BOOTKIT_MANIFEST": "m/manifest.json"})
        assert paths.manifest_path == tmp_path.resolve() / "m" / "manifest.json"

    def test_explicit_manifest_wins(self, tmp_path):
        paths = resolve_paths(tmp_path, manifest="x.yaml", environ={"BOOTKIT_MANIFEST": "y.yaml"})
        assert paths.manifest_path.name == "x.yaml"


class TestLoadConfig:
    def test_env_file_does_not_override(self, paths):
        paths.state_dir.mkdir(parents=True)
        paths.env_file.write_text("BOOTKIT_PROJECT_NAME=from-dotenv\nBOOTKIT_GIT_DEFAULT_BRANCH=dev\n")
        environ = {"BOOTKIT_PROJECT_NAME": "from-shell"}

        store = load_config(paths, environ=environ)

        assert store.get("project.name") == "from-shell"
        assert store.get("git.default_branch") == "dev"


class TestInitConfig:
    def test_writes_defaults_and_detected(self, paths):
        path = init_config(paths, detected={"project.name": "my-app", "git.user_name": ""})

        store = _store(path)
        assert store.get("project.name") == "my-app"
        assert store.get("docker.database_name") == "my_app_dev"
        assert store.get("project.phase") == "POC"
        assert not store.has("git.user_name", ConfigLayer.FILE)

    def test_name_falls_back_to_directory(self, paths):
        init_config(paths)
        assert _store(paths.config_file).get("project.name") == paths.project_root.name

    def test_refuses_to_overwrite(self, paths):
        paths.state_dir.mkdir(parents=True)
        paths.config_file.write_text("[project]\nname=keep\n")

        with pytest.raises(ConfigError, match="already exists"):
            init_config(paths)
        assert "keep" in paths.config_file.read_text()

    def test_force_replaces_even_malformed_file(self, paths):
        paths.state_dir.mkdir(parents=True)
        paths.config_file.write_text("not a config\n")

        init_config(paths, detected={"project.name": "fresh"}, force=True)

        assert _store(paths.config_file).get("project.name") == "fresh"
