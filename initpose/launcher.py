"""Starting launch files in a terminal and stopping running processes."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import stat
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_SETTLE_SECONDS = 1.0


@dataclass(frozen=True)
class LaunchConfig:
    """Where a workspace lives and which launch file of which package to start."""

    workspace_path: str
    package_name: str
    launch_file: str
    setup_file: str = "setup.bash"


def _terminal_command(inner: str) -> list[str]:
    return ["gnome-terminal", "-t", "GUI", "--", "bash", "-c", inner]


class CommandLauncher:
    """Runs shell commands in a new terminal window."""

    def start_launch(self, config: LaunchConfig) -> bool:
        """Launch the configured file in a new terminal; True when the command succeeded."""
        if not self._validate_workspace(config):
            logger.error("Workspace validation failed")
            return False
        return self._execute_temp_bash_command(self._build_launch_command(config))

    def execute_existed_bash_command(self, command: str) -> bool:
        """Run ``./command`` in a new terminal; True when the terminal exited cleanly."""
        return self._run(_terminal_command(f"./{command}; exec bash"))

    @staticmethod
    def _validate_workspace(config: LaunchConfig) -> bool:
        workspace = Path(config.workspace_path)
        if not workspace.exists():
            logger.error("Workspace path does not exist: %s", workspace)
            return False
        setup_path = workspace / "install" / config.setup_file
        if not setup_path.exists():
            logger.error("Setup file does not exist: %s", setup_path)
            return False
        return True

    @staticmethod
    def _build_launch_command(config: LaunchConfig) -> str:
        inner = (
            f"cd {shlex.quote(config.workspace_path)};"
            f"source install/{shlex.quote(config.setup_file)};"
            f"ros2 launch {shlex.quote(config.package_name)} "
            f"{shlex.quote(config.launch_file)};"
            "exec bash"
        )
        return shlex.join(_terminal_command(inner))

    def _execute_temp_bash_command(self, command: str) -> bool:
        with tempfile.NamedTemporaryFile(
            "w", prefix=f"tmp_launch_script_{int(time.time())}_", suffix=".sh", delete=False
        ) as script:
            script.write("#!/bin/bash\n")
            script.write(command + "\n")
            script_path = Path(script.name)
        try:
            script_path.chmod(script_path.stat().st_mode | stat.S_IXUSR)
            return self._run([str(script_path)])
        finally:
            script_path.unlink(missing_ok=True)

    @staticmethod
    def _run(args: list[str]) -> bool:
        try:
            completed = subprocess.run(args, check=False)
        except OSError as exc:
            logger.error("Command could not be started: %s", exc)
            return False
        if completed.returncode != 0:
            logger.error("Command failed with status %d", completed.returncode)
            return False
        return True


def _send(pid: int, sig: int) -> bool:
    try:
        os.kill(pid, sig)
    except OSError as exc:
        logger.error("Failed to send %s to process %d: %s", signal.Signals(sig).name, pid, exc)
        return False
    return True


def _exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def kill_existing_process(package_name: str, launch_file: str) -> bool:
    """Terminate every process whose command line mentions ``package_name``.

    Returns True when no such process is left (or none was found).
    """
    try:
        found = subprocess.run(
            ["pgrep", "-f", package_name], capture_output=True, text=True, check=False
        )
    except OSError as exc:
        logger.error("Failed to search for processes: %s", exc)
        return False

    pids = [int(line) for line in found.stdout.split() if line.strip()]
    if not pids:
        logger.info("No related processes found")
        return True

    all_killed = True
    for pid in pids:
        if not _send(pid, signal.SIGTERM) and not _send(pid, signal.SIGKILL):
            all_killed = False

    time.sleep(_SETTLE_SECONDS)

    for pid in pids:
        if _exists(pid):
            logger.error("Process %d still exists", pid)
            all_killed = False
    return all_killed


__all__ = ["LaunchConfig", "CommandLauncher", "kill_existing_process"]