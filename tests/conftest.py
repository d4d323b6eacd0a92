import os
from pathlib import Path

import pytest
import yaml

from bootkit.config import resolve_paths


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    # Config resolution reads BOOTKIT_* from the process environment
    for name in list(os.environ):
        if name.startswith("BOOTKIT_"):
            monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def project_root(tmp_path) -> Path:
    """An empty target project directory."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def paths(project_root):
    return resolve_paths(project_root, environ={})


@pytest.fixture
def manifest_data() -> dict:
    """A small two-phase manifest with a conflicting pair and two profiles."""
    return {
        "phases": {1: {"name": "Foundation"}, 2: {"name": "Development Environment"}},
        "scripts": {
            "git": {
                "phase": 1,
                "category": "core",
                "priority": 10,
                "creates": [".gitignore"],
                "description": "Initialize git",
            },
            "packages": {
                "phase": 1,
                "category": "core",
                "priority": 20,
                "depends": ["git"],
                "creates": ["package.json"],
            },
            "linting": {
                "phase": 2,
                "category": "quality",
                "depends": ["packages"],
                "requires": ["eslint"],
                "creates": [".eslintrc.json"],
            },
            "docker-postgres": {
                "phase": 2,
                "category": "docker",
                "conflicts": ["docker-mysql"],
                "creates": ["docker-compose.yml"],
            },
            "docker-mysql": {
                "phase": 2,
                "category": "docker",
                "creates": ["docker-compose.yml"],
            },
        },
        "profiles": {
            "standard": {"description": "Minimal project", "scripts": ["packages", "git"]},
            "databases": {"scripts": ["docker-postgres", "docker-mysql"]},
        },
    }


@pytest.fixture
def write_manifest(paths):
    """Write a manifest document to the project's default manifest path."""
    def _write(data: dict) -> Path:
        paths.manifest_path.parent.mkdir(parents=True, exist_ok=True)
        paths.manifest_path.write_text(yaml.safe_dump(data, sort_keys=False))
        return paths.manifest_path
    return _write


@pytest.fixture
def fake_which():
    """Build a shutil.which replacement that only knows the given tools."""
    def _factory(*available: str):
        def _which(name):
            return f"/usr/bin/{name}" if name in available else None
        return _which
    return _factory
