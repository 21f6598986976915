"""
Command Resolver.

Resolves a logical executable name ("npx", "uvx", ...) to a launchable path.
The inherited environment of a desktop or service process often lacks the
PATH additions an interactive shell would have, so well-known install
locations are probed before giving up.

Resolution order:
1. Path-like input (contains a separator) -> returned unchanged
2. Bundled wrapper script for the current OS/shell family
3. Well-known install locations (incl. version-manager directories)
4. The platform's native locate utility (which / where)
5. The bare name, relying on PATH at spawn time

Every step may fail silently; resolve() never raises.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_SCRIPTS_DIR = Path(__file__).parent / "scripts"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.\-]+$")


def _path_exists(path: str) -> bool:
    try:
        return os.path.exists(path)
    except (OSError, ValueError):
        return False


def _nvm_paths(home: str, name: str) -> List[str]:
    paths = [f"{home}/.nvm/versions/node/{version}/bin/{name}" for version in ("v18", "v20", "v22")]
    paths.append(f"{home}/.nvm/current/bin/{name}")
    return paths


class CommandResolver:
    """Resolve executable names per platform."""

    def __init__(
        self,
        scripts_dir: Optional[Path] = None,
        platform: Optional[str] = None,
        home: Optional[str] = None,
    ):
        self.scripts_dir = Path(scripts_dir) if scripts_dir else DEFAULT_SCRIPTS_DIR
        self.platform = platform or sys.platform
        self.home = home if home is not None else os.path.expanduser("~")
        if self.home == "~":
            self.home = ""

    @property
    def is_windows(self) -> bool:
        return self.platform == "win32"

    def resolve(self, command: Optional[str]) -> Optional[str]:
        """Resolve a command name to a path, degrading to the bare name."""
        if not command or not isinstance(command, str) or "/" in command or "\\" in command:
            return command

        script = self._wrapper_script(command)
        if script:
            logger.info(f"Using wrapper script for {command}: {script}")
            return script

        for known in self.known_paths(command):
            if _path_exists(known):
                logger.info(f"Found {command} at known path: {known}")
                return known

        located = self._locate(command)
        if located:
            logger.info(f"Found {command} using locate utility at {located}")
            return located

        logger.info(f"Could not resolve path for {command}; assuming it is on PATH")
        return command

    __call__ = resolve

    def _wrapper_script(self, command: str) -> Optional[str]:
        suffix = ".cmd" if self.is_windows else ".sh"
        script = self.scripts_dir / f"run-{command}{suffix}"
        return str(script) if _path_exists(str(script)) else None

    def known_paths(self, command: str) -> List[str]:
        home = self.home
        if self.is_windows:
            table: Dict[str, List[str]] = {
                "deno": [f"{home}\\.deno\\bin\\deno.exe"] if home else [],
                "uvx": [f"{home}\\.local\\bin\\uvx.exe"] if home else [],
            }
            return table.get(command, [])

        table = {
            "npx": ["/usr/local/bin/npx", "/usr/bin/npx", "/opt/homebrew/bin/npx"],
            "node": ["/usr/local/bin/node", "/usr/bin/node", "/opt/homebrew/bin/node"],
            "uvx": ["/opt/homebrew/bin/uvx", "/usr/local/bin/uvx", "/usr/bin/uvx"],
            "uv": ["/opt/homebrew/bin/uv", "/usr/local/bin/uv", "/usr/bin/uv"],
            "deno": ["/opt/homebrew/bin/deno", "/usr/local/bin/deno"],
            "docker": ["/usr/local/bin/docker", "/usr/bin/docker", "/opt/homebrew/bin/docker"],
        }
        paths = list(table.get(command, []))
        if home:
            if command in ("npx", "node"):
                paths.extend(_nvm_paths(home, command))
            elif command in ("uvx", "uv"):
                paths.append(f"{home}/.local/bin/{command}")
                paths.append(f"{home}/.cargo/bin/{command}")
            elif command == "deno":
                paths.insert(0, f"{home}/.deno/bin/deno")
        return paths

    def _locate(self, command: str) -> Optional[str]:
        if not _SAFE_NAME.match(command):
            logger.warning(f"Command {command!r} has unexpected characters; skipping locate lookup")
            return None

        locator = "where" if self.is_windows else "which"
        try:
            result = subprocess.run(
                [locator, command],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.SubprocessError):
            return None

        if result.returncode != 0:
            return None
        for line in result.stdout.splitlines():
            candidate = line.strip()
            if candidate and _path_exists(candidate):
                return candidate
        return None
