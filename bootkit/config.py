"""
Configuration management for bootkit.

ConfigStore is a layered key/value store. Every value is a string addressed
by a dotted key (section.field) and resolved through a fixed precedence:

    environment > session answers > persisted file > built-in default

Only the session and file layers are writable at runtime. The file layer is
persisted as a sectioned key=value file:

    # comment
    [project]
    name=my-app
    phase=POC

Values stay strings in storage. CONFIG_SCHEMA declares the expected type of
known keys; it is enforced at persist() time and by the typed accessors,
which raise TypeCoercionError instead of silently defaulting.

State directory resolution:
1. BOOTKIT_HOME environment variable if set
2. <project_root>/.bootkit
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Optional, Union

from dotenv import dotenv_values, load_dotenv

from bootkit.cache import MtimeCache
from bootkit.errors import ConfigError, ConfigParseError, TypeCoercionError
from bootkit.schemas import ConfigEntry, ConfigLayer, WRITABLE_LAYERS
from bootkit.utils import atomic_write

logger = logging.getLogger(__name__)

ENV_PREFIX = "BOOTKIT_"
STATE_DIR_NAME = ".bootkit"
CONFIG_FILE_NAME = "bootkit.config"
MANIFEST_FILE_NAME = "bootkit-manifest.yaml"
ANSWERS_FILE_NAME = "answers.env"

CONFIG_HEADER = (
    "# bootkit configuration\n"
    "# Values set here are overridden by BOOTKIT_<SECTION>_<FIELD> environment variables.\n"
)

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")

TRUE_VALUES = frozenset({"true", "yes", "1", "on"})
FALSE_VALUES = frozenset({"false", "no", "0", "off"})


# =============================================================================
# Schema
# =============================================================================


@dataclass(frozen=True)
class FieldSpec:
    """
    Declared type of a config key.

    Attributes:
        type: "str", "int", "bool" or "choice"
        choices: Allowed values for "choice"
        min: Inclusive lower bound for "int"
        max: Inclusive upper bound for "int"
        help: Human description shown by `bootkit config show`
    """
    type: str = "str"
    choices: tuple[str, ...] = ()
    min: Optional[int] = None
    max: Optional[int] = None
    help: str = ""

    def __post_init__(self):
        if self.type not in ("str", "int", "bool", "choice"):
            raise ValueError(f"Unknown field type: {self.type}")
        if self.type == "choice" and not self.choices:
            raise ValueError("choice fields need at least one choice")

    def validate(self, key: str, value: str) -> None:
        """
        Check value against the declared type.

        Raises:
            TypeCoercionError: If the value does not conform
        """
        if self.type == "int":
            number = parse_int(key, value)
            if self.min is not None and number < self.min:
                raise TypeCoercionError(key, value, f"an integer >= {self.min}")
            if self.max is not None and number > self.max:
                raise TypeCoercionError(key, value, f"an integer <= {self.max}")
        elif self.type == "bool":
            parse_bool(key, value)
        elif self.type == "choice" and value not in self.choices:
            raise TypeCoercionError(key, value, f"one of {', '.join(self.choices)}")


_PORT = FieldSpec("int", min=1024, max=65535, help="Port number (1024-65535)")

CONFIG_SCHEMA: dict[str, FieldSpec] = {
    "project.name": FieldSpec(help="Project name (lowercase, no spaces)"),
    "project.phase": FieldSpec("choice", choices=("POC", "MVP", "Production"), help="Project phase"),
    "git.user_name": FieldSpec(help="Commit author name"),
    "git.user_email": FieldSpec(help="Commit author email"),
    "git.default_branch": FieldSpec(help="Default branch name"),
    "docker.database_type": FieldSpec(help="Database engine for local services"),
    "docker.database_name": FieldSpec(help="Development database name"),
    "docker.app_port": _PORT,
    "docker.database_port": _PORT,
    "docker.redis_port": _PORT,
    "packages.package_manager": FieldSpec("choice", choices=("npm", "yarn", "pnpm"), help="Package manager"),
    "packages.node_version": FieldSpec("int", min=1, help="Node major version"),
    "testing.coverage_threshold": FieldSpec("int", min=0, max=100, help="Coverage threshold (0-100)"),
    "testing.e2e_framework": FieldSpec(help="End-to-end test framework"),
}

DEFAULTS: dict[str, str] = {
    "project.phase": "POC",
    "git.default_branch": "main",
    "docker.database_type": "postgres",
    "docker.app_port": "3000",
    "docker.database_port": "5432",
    "packages.package_manager": "pnpm",
    "packages.node_version": "20",
    "testing.coverage_threshold": "70",
    "testing.e2e_framework": "playwright",
}

# Upper-case answer-file names understood in addition to dotted keys
ANSWER_KEYS: dict[str, str] = {
    "PROJECT_NAME": "project.name",
    "PROJECT_PHASE": "project.phase",
    "GIT_USER_NAME": "git.user_name",
    "GIT_USER_EMAIL": "git.user_email",
    "GIT_DEFAULT_BRANCH": "git.default_branch",
    "DATABASE_TYPE": "docker.database_type",
    "DATABASE_NAME": "docker.database_name",
    "APP_PORT": "docker.app_port",
    "DATABASE_PORT": "docker.database_port",
    "PACKAGE_MANAGER": "packages.package_manager",
    "NODE_VERSION": "packages.node_version",
    "COVERAGE_THRESHOLD": "testing.coverage_threshold",
    "E2E_FRAMEWORK": "testing.e2e_framework",
}

# Rendering order of sections in the persisted file; unknown sections follow alphabetically
SECTION_ORDER = ("project", "git", "docker", "packages", "testing")


def parse_bool(key: str, value: str) -> bool:
    """Parse a boolean literal (true/false, yes/no, 1/0, on/off)."""
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise TypeCoercionError(key, value, "a boolean (true/false)")


def parse_int(key: str, value: str) -> int:
    """Parse a base-10 integer."""
    try:
        return int(value.strip(), 10)
    except ValueError:
        raise TypeCoercionError(key, value, "an integer")


def validate_key(key: str) -> None:
    """
    Check that key has the section.field shape.

    Raises:
        ConfigError: If the key is malformed
    """
    if not isinstance(key, str) or not _KEY_RE.match(key):
        raise ConfigError(f"Config key must be in 'section.field' format: {key!r}")


def env_var_name(key: str) -> str:
    """Environment variable that overrides key (project.name -> BOOTKIT_PROJECT_NAME)."""
    section, field = key.split(".", 1)
    return f"{ENV_PREFIX}{section}_{field}".upper().replace("-", "_")


# =============================================================================
# File format
# =============================================================================


def parse_config_text(text: str, path: Any = "<string>") -> dict[str, str]:
    """
    Parse the sectioned key=value format.

    Unknown keys are kept. Malformed lines are reported, never dropped.

    Args:
        text: File contents
        path: Used in error messages

    Returns:
        Dotted key -> value

    Raises:
        ConfigParseError: On a malformed line
    """
    values: dict[str, str] = {}
    section: Optional[str] = None

    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#") or line.startswith(";"):
            continue

        if line.startswith("["):
            if not line.endswith("]"):
                raise ConfigParseError(path, line_no, raw, "unterminated section header")
            name = line[1:-1].strip()
            if not _NAME_RE.match(name):
                raise ConfigParseError(path, line_no, raw, "invalid section name")
            section = name
            continue

        if "=" not in line:
            raise ConfigParseError(path, line_no, raw, "expected key=value")
        field, value = line.split("=", 1)
        field = field.strip()
        if not _NAME_RE.match(field):
            raise ConfigParseError(path, line_no, raw, "invalid key")
        if section is None:
            raise ConfigParseError(path, line_no, raw, "key outside of a [section]")
        values[f"{section}.{field}"] = value.strip()

    return values


def render_config(values: Mapping[str, str]) -> str:
    """
    Render values in the persisted format.

    Output is a pure function of the values (no timestamps), so rendering the
    same logical content always yields the same bytes.
    """
    by_section: dict[str, dict[str, str]] = {}
    for key, value in values.items():
        section, field = key.split(".", 1)
        by_section.setdefault(section, {})[field] = value

    known = [s for s in SECTION_ORDER if s in by_section]
    extra = sorted(s for s in by_section if s not in SECTION_ORDER)

    chunks = [CONFIG_HEADER]
    for section in known + extra:
        lines = [f"[{section}]"]
        for field in sorted(by_section[section]):
            lines.append(f"{field}={by_section[section][field]}")
        chunks.append("\n".join(lines) + "\n")
    return "\n".join(chunks)


def read_config_file(path: Path) -> dict[str, str]:
    """Read and parse a persisted config file."""
    return parse_config_text(Path(path).read_text(encoding="utf-8"), path)


# =============================================================================
# Paths
# =============================================================================


@dataclass(frozen=True)
class BootkitPaths:
    """Filesystem locations for one project."""
    project_root: Path
    state_dir: Path
    manifest_path: Path

    @property
    def config_file(self) -> Path:
        return self.state_dir / CONFIG_FILE_NAME

    @property
    def env_file(self) -> Path:
        return self.state_dir / ".env"

    @property
    def answers_file(self) -> Path:
        return self.state_dir / ANSWERS_FILE_NAME

    @property
    def backups_dir(self) -> Path:
        return self.state_dir / "backups"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def session_log(self) -> Path:
        return self.logs_dir / "session.log"

    @property
    def error_log(self) -> Path:
        return self.logs_dir / "errors.log"

    @property
    def app_log(self) -> Path:
        return self.logs_dir / "bootkit.log"


def get_bootkit_home(project_root: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> Path:
    """
    Get the bootkit state directory.

    Resolution order:
    1. BOOTKIT_HOME environment variable
    2. <project_root>/.bootkit
    """
    environ = os.environ if environ is None else environ
    home = environ.get("BOOTKIT_HOME")
    if home:
        return Path(home).expanduser()
    return Path(project_root) / STATE_DIR_NAME


def resolve_paths(
    project_root: Optional[Union[str, Path]] = None,
    manifest: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BootkitPaths:
    """
    Resolve every bootkit location for a project.

    Args:
        project_root: Target project directory (defaults to the current directory)
        manifest: Explicit manifest path; otherwise BOOTKIT_MANIFEST, then
                  <project_root>/bootkit-manifest.yaml
        environ: Environment mapping (defaults to os.environ)

    Returns:
        BootkitPaths
    """
    environ = os.environ if environ is None else environ
    root = Path(project_root or Path.cwd()).resolve()

    if manifest is None:
        manifest = environ.get("BOOTKIT_MANIFEST") or root / MANIFEST_FILE_NAME
    manifest_path = Path(manifest).expanduser()
    if not manifest_path.is_absolute():
        manifest_path = root / manifest_path

    state_dir = get_bootkit_home(root, environ)
    if not state_dir.is_absolute():
        state_dir = root / state_dir

    return BootkitPaths(project_root=root, state_dir=state_dir, manifest_path=manifest_path)


# =============================================================================
# Store
# =============================================================================


class ConfigStore:
    """
    Layered, typed key/value configuration.

    Not thread-safe: the orchestrator serializes every set() call, and the
    environment probe hands its results back to the main thread.
    """

    def __init__(
        self,
        config_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        defaults: Optional[Mapping[str, str]] = None,
        schema: Optional[Mapping[str, FieldSpec]] = None,
        cache: Optional[MtimeCache] = None,
    ):
        """
        Initialize the store.

        Args:
            config_file: Persisted file backing the FILE layer (None for in-memory only)
            environ: Environment mapping for the ENVIRONMENT layer (defaults to os.environ)
            defaults: Built-in defaults (defaults to DEFAULTS)
            schema: Declared key types (defaults to CONFIG_SCHEMA)
            cache: Cache used when parsing the persisted file

        Raises:
            ConfigParseError: If the persisted file has a malformed line
        """
        self.config_file = Path(config_file) if config_file is not None else None
        self._environ = os.environ if environ is None else environ
        self._defaults = dict(DEFAULTS if defaults is None else defaults)
        self.schema = dict(CONFIG_SCHEMA if schema is None else schema)
        self._cache = cache or MtimeCache()
        self._session: dict[str, str] = {}
        self._file: dict[str, str] = {}
        self.reload()

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def reload(self) -> None:
        """Re-read the FILE layer from disk, discarding unpersisted file writes."""
        if self.config_file is None or not self.config_file.exists():
            self._file = {}
            return
        path = self.config_file
        parsed = self._cache.cached(f"config:{path}", path, lambda: read_config_file(path))
        self._file = dict(parsed)

    def load_answers(self, path: Union[str, Path]) -> int:
        """
        Overlay an answers file onto the SESSION layer.

        The file uses dotenv syntax. Keys are dotted keys or the upper-case
        names in ANSWER_KEYS; anything else is ignored. Empty values are skipped.

        Args:
            path: Answers file

        Returns:
            Number of values applied

        Raises:
            ConfigError: If the file does not exist
        """
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Answers file not found: {path}")

        applied = 0
        for name, value in dotenv_values(path).items():
            if not value:
                continue
            key = ANSWER_KEYS.get(name, name)
            if not _KEY_RE.match(key):
                logger.debug(f"Ignoring unrecognized answer '{name}'")
                continue
            self.set(key, value, ConfigLayer.SESSION)
            applied += 1
        logger.info(f"Loaded {applied} answer(s) from {path}")
        return applied

    def commit_answers(self) -> int:
        """
        Copy the SESSION layer into the FILE layer.

        Returns:
            Number of keys copied
        """
        for key, value in self._session.items():
            self._file[key] = value
        return len(self._session)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _layer_value(self, layer: ConfigLayer, key: str) -> Optional[str]:
        if layer == ConfigLayer.ENVIRONMENT:
            return self._environ.get(env_var_name(key))
        if layer == ConfigLayer.SESSION:
            return self._session.get(key)
        if layer == ConfigLayer.FILE:
            return self._file.get(key)
        return self._defaults.get(key)

    def get_entry(self, key: str) -> Optional[ConfigEntry]:
        """
        Resolve key and report which layer supplied it.

        Returns:
            The winning ConfigEntry, or None if no layer has the key
        """
        validate_key(key)
        for layer in ConfigLayer:
            value = self._layer_value(layer, key)
            if value is not None:
                return ConfigEntry(key=key, value=value, layer=layer)
        return None

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Resolve key through environment > session > file > default."""
        entry = self.get_entry(key)
        return entry.value if entry is not None else default

    def get_bool(self, key: str, default: Optional[bool] = None) -> Optional[bool]:
        """
        Resolve key as a boolean.

        Returns default only when no layer has the key.

        Raises:
            TypeCoercionError: If the resolved value is not a boolean literal
        """
        value = self.get(key)
        if value is None:
            return default
        return parse_bool(key, value)

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        """
        Resolve key as an integer.

        Returns default only when no layer has the key.

        Raises:
            TypeCoercionError: If the resolved value is not an integer
        """
        value = self.get(key)
        if value is None:
            return default
        return parse_int(key, value)

    def has(self, key: str, layer: Optional[ConfigLayer] = None) -> bool:
        """True if key is set in the given layer (or any layer)."""
        validate_key(key)
        if layer is None:
            return self.get_entry(key) is not None
        return self._layer_value(layer, key) is not None

    def keys(self) -> list[str]:
        """Every key known to any layer, sorted."""
        known = set(self._defaults) | set(self.schema) | set(self._file) | set(self._session)
        return sorted(k for k in known if self.get_entry(k) is not None)

    def sections(self) -> list[str]:
        return sorted({k.split(".", 1)[0] for k in self.keys()})

    def as_dict(self) -> dict[str, str]:
        """Resolved view of every key."""
        return {key: self.get(key) for key in self.keys()}

    def describe(self) -> list[ConfigEntry]:
        """Resolved entries with provenance, sorted by key."""
        return [self.get_entry(key) for key in self.keys()]

    def layer(self, layer: ConfigLayer) -> dict[str, str]:
        """Copy of one layer's raw values."""
        if layer == ConfigLayer.ENVIRONMENT:
            result = {}
            for key in set(self._defaults) | set(self.schema) | set(self._file) | set(self._session):
                value = self._environ.get(env_var_name(key))
                if value is not None:
                    result[key] = value
            return result
        if layer == ConfigLayer.SESSION:
            return dict(self._session)
        if layer == ConfigLayer.FILE:
            return dict(self._file)
        return dict(self._defaults)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _writable(self, key: str, scope: ConfigLayer) -> dict[str, str]:
        validate_key(key)
        if scope not in WRITABLE_LAYERS:
            raise ConfigError(f"Config layer '{scope.label}' is read-only")
        return self._session if scope == ConfigLayer.SESSION else self._file

    def set(self, key: str, value: Any, scope: ConfigLayer = ConfigLayer.SESSION) -> None:
        """
        Write a value into a writable layer.

        Booleans are stored as "true"/"false"; other values via str().

        Raises:
            ConfigError: If the key is malformed, the layer is read-only, or
                         the value spans multiple lines
        """
        target = self._writable(key, scope)
        if isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value)
        if "\n" in text or "\r" in text:
            raise ConfigError(f"{key}: values must be a single line")
        target[key] = text.strip()

    def unset(self, key: str, scope: ConfigLayer = ConfigLayer.SESSION) -> bool:
        """
        Remove a value from a writable layer.

        Returns:
            True if the key was present
        """
        return self._writable(key, scope).pop(key, None) is not None

    def clear(self, scope: ConfigLayer) -> None:
        """Remove every value from a writable layer."""
        if scope not in WRITABLE_LAYERS:
            raise ConfigError(f"Config layer '{scope.label}' is read-only")
        if scope == ConfigLayer.SESSION:
            self._session.clear()
        else:
            self._file.clear()

    def validate(self) -> None:
        """
        Check every FILE-layer value against the schema.

        Raises:
            TypeCoercionError: On the first nonconforming value
        """
        for key in sorted(self._file):
            spec = self.schema.get(key)
            if spec is not None:
                spec.validate(key, self._file[key])

    def persist(self) -> bool:
        """
        Flush the FILE layer to disk.

        Validates first; on a schema violation nothing is written. Writes go to
        a temp file renamed over the target. When the rendered content equals
        the existing file the file is left untouched.

        Returns:
            True if the file was (re)written

        Raises:
            ConfigError: If the store has no backing file
            TypeCoercionError: If a value violates the schema
        """
        if self.config_file is None:
            raise ConfigError("Config store has no backing file")

        self.validate()
        content = render_config(self._file)

        if self.config_file.exists():
            if self.config_file.read_text(encoding="utf-8") == content:
                logger.debug(f"Config unchanged, not rewriting {self.config_file}")
                return False

        atomic_write(self.config_file, content)
        self._cache.invalidate(f"config:{self.config_file}")
        logger.info(f"Persisted config to {self.config_file}")
        return True

    def __repr__(self) -> str:
        return f"ConfigStore(file={self.config_file}, keys={len(self.keys())})"


def load_config(
    paths: BootkitPaths,
    environ: Optional[MutableMapping[str, str]] = None,
    cache: Optional[MtimeCache] = None,
) -> ConfigStore:
    """
    Build the ConfigStore for a project.

    A .env file in the state directory is loaded into the environment first,
    without overriding variables that are already set.

    Args:
        paths: Resolved project paths
        environ: Environment mapping (defaults to os.environ)
        cache: Shared cache

    Returns:
        ConfigStore backed by paths.config_file

    Raises:
        ConfigParseError: If the persisted file is malformed
    """
    if paths.env_file.is_file():
        if environ is None:
            load_dotenv(paths.env_file, override=False)
        else:
            for name, value in dotenv_values(paths.env_file).items():
                if value is not None:
                    environ.setdefault(name, value)
        logger.debug(f"Loaded environment from {paths.env_file}")

    return ConfigStore(config_file=paths.config_file, environ=environ, cache=cache)


def init_config(
    paths: BootkitPaths,
    detected: Optional[Mapping[str, str]] = None,
    force: bool = False,
) -> Path:
    """
    Write a starter config from defaults plus detected values.

    Args:
        paths: Resolved project paths
        detected: Dotted key -> value from environment detection
        force: Overwrite an existing config file

    Returns:
        Path of the written file

    Raises:
        ConfigError: If the file exists and force is False
        TypeCoercionError: If a detected value violates the schema
    """
    if paths.config_file.exists() and not force:
        raise ConfigError(
            f"Config already exists at {paths.config_file}. Use --force to overwrite."
        )

    values = dict(DEFAULTS)
    values.update({k: v for k, v in (detected or {}).items() if v})

    name = values.get("project.name") or paths.project_root.name
    values["project.name"] = name
    values.setdefault("docker.database_name", f"{name.replace('-', '_')}_dev")

    # Start from an empty file layer; an existing file is replaced, not merged
    store = ConfigStore(environ={})
    store.config_file = paths.config_file
    for key, value in values.items():
        store.set(key, value, ConfigLayer.FILE)
    store.persist()
    return paths.config_file
