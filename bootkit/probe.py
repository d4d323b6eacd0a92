"""
EnvironmentProbe - background, read-only tool and project detection.

The probe runs on a single worker thread while the CLI resolves the request,
so tool lookups and project detection are ready by the time the first
operation is gated. It never writes anything: results are handed back to the
main thread, which applies them with apply_to().
"""

import json
import logging
import re
import shutil
import subprocess
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

from bootkit.config import ConfigStore
from bootkit.dependencies import DependencyChecker
from bootkit.schemas import ConfigLayer

logger = logging.getLogger(__name__)

DEFAULT_TOOLS = ("git", "node", "npm", "pnpm", "yarn", "docker", "python3")

# Lock file -> package manager, first match wins
LOCK_FILES = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
)

_PHASE_RE = re.compile(r"Phase[^:\n]*:\s*\**\s*(POC|MVP|Production)\b", re.IGNORECASE)


@dataclass(frozen=True)
class ProbeResult:
    """
    What the probe found.

    Attributes:
        tools: Tool name -> resolved executable path (None if missing)
        detected: Dotted config key -> detected value
    """
    tools: Mapping[str, Optional[str]] = field(default_factory=dict)
    detected: Mapping[str, str] = field(default_factory=dict)

    @property
    def missing_tools(self) -> list[str]:
        return sorted(name for name, path in self.tools.items() if path is None)


def _git_config(root: Path, name: str) -> Optional[str]:
    try:
        proc = subprocess.run(
            ["git", "config", name],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git config {name} unavailable: {e}")
        return None
    value = proc.stdout.strip()
    return value if proc.returncode == 0 and value else None


def _git_branch(root: Path) -> Optional[str]:
    head = root / ".git" / "HEAD"
    if not head.is_file():
        return None
    content = head.read_text(encoding="utf-8", errors="replace").strip()
    prefix = "ref: refs/heads/"
    return content[len(prefix):] if content.startswith(prefix) else None


def _project_name(root: Path) -> str:
    package_json = root / "package.json"
    if package_json.is_file():
        try:
            name = json.loads(package_json.read_text(encoding="utf-8")).get("name")
        except (UnicodeDecodeError, json.JSONDecodeError, AttributeError) as e:
            logger.debug(f"Ignoring unreadable package.json: {e}")
            name = None
        if isinstance(name, str) and name:
            return name.split("/")[-1]
    return root.name


def _node_version(root: Path) -> Optional[str]:
    nvmrc = root / ".nvmrc"
    if not nvmrc.is_file():
        return None
    match = re.match(r"v?(\d+)", nvmrc.read_text(encoding="utf-8", errors="replace").strip())
    return match.group(1) if match else None


def _project_phase(root: Path) -> Optional[str]:
    readme = root / "README.md"
    if not readme.is_file():
        return None
    match = _PHASE_RE.search(readme.read_text(encoding="utf-8", errors="replace"))
    if not match:
        return None
    value = match.group(1)
    return "Production" if value.lower() == "production" else value.upper()


def detect_project(root: Path, tools: Mapping[str, Optional[str]]) -> dict[str, str]:
    """
    Detect config values from the project directory.

    Args:
        root: Project root
        tools: Resolved tool paths (git config is only read when git is available)

    Returns:
        Dotted key -> value for everything that could be detected
    """
    detected = {"project.name": _project_name(root)}

    for lock_file, manager in LOCK_FILES:
        if (root / lock_file).is_file():
            detected["packages.package_manager"] = manager
            break

    optional = {
        "git.default_branch": _git_branch(root),
        "packages.node_version": _node_version(root),
        "project.phase": _project_phase(root),
    }
    if tools.get("git"):
        optional["git.user_name"] = _git_config(root, "user.name")
        optional["git.user_email"] = _git_config(root, "user.email")

    detected.update({k: v for k, v in optional.items() if v})
    return detected


class EnvironmentProbe:
    """
    Run detection on one background thread.

    Usage:
        probe = EnvironmentProbe(paths.project_root).start()
        ...  # resolve the request, render the plan
        probe.apply_to(config, checker)
    """

    def __init__(
        self,
        project_root: Path,
        tools: Iterable[str] = DEFAULT_TOOLS,
        which: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.project_root = Path(project_root)
        self.tools = tuple(tools)
        self._which = which or shutil.which
        self._future: Optional[Future] = None

    def _run(self) -> ProbeResult:
        tools = {name: self._which(name) for name in self.tools}
        detected = detect_project(self.project_root, tools)
        logger.debug(f"Probe found {len(detected)} value(s), missing tools: {sorted(t for t, p in tools.items() if p is None)}")
        return ProbeResult(tools=tools, detected=detected)

    def start(self) -> "EnvironmentProbe":
        """Submit detection to the worker thread. Idempotent."""
        if self._future is None:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bootkit-probe")
            self._future = executor.submit(self._run)
            # The worker exits once its single task is done
            executor.shutdown(wait=False)
        return self

    @property
    def started(self) -> bool:
        return self._future is not None

    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def result(self, timeout: Optional[float] = None) -> ProbeResult:
        """
        Wait for the probe.

        Starts it first if needed. Exceptions raised by detection propagate.

        Raises:
            concurrent.futures.TimeoutError: If timeout elapses first
        """
        self.start()
        return self._future.result(timeout=timeout)

    def apply_to(
        self,
        config: ConfigStore,
        checker: Optional[DependencyChecker] = None,
        timeout: Optional[float] = None,
    ) -> list[str]:
        """
        Apply the probe's findings on the calling (main) thread.

        Detected values fill FILE-layer keys that are not set yet; tool
        lookups pre-warm the checker's memo.

        Returns:
            Keys written to the FILE layer
        """
        result = self.result(timeout=timeout)
        applied = []
        for key, value in sorted(result.detected.items()):
            if not config.has(key, ConfigLayer.FILE):
                config.set(key, value, ConfigLayer.FILE)
                applied.append(key)
        if checker is not None:
            checker.prime(result.tools)
        if applied:
            logger.info(f"Detected {', '.join(applied)}")
        return applied
