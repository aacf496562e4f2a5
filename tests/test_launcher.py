import os
import signal
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from initpose.launcher import CommandLauncher, LaunchConfig, kill_existing_process


def _completed(returncode=0, stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout)


@pytest.fixture
def workspace(tmp_path):
    install = tmp_path / "install"
    install.mkdir()
    (install / "setup.bash").write_text("# setup\n")
    return tmp_path


def test_start_launch_missing_workspace(tmp_path):
    config = LaunchConfig(str(tmp_path / "absent"), "pkg", "run.launch.py")
    with mock.patch("initpose.launcher.subprocess.run") as run:
        assert CommandLauncher().start_launch(config) is False
    assert run.call_count == 0


def test_start_launch_missing_setup_file(workspace):
    config = LaunchConfig(str(workspace), "pkg", "run.launch.py", "setup.zsh")
    with mock.patch("initpose.launcher.subprocess.run") as run:
        assert CommandLauncher().start_launch(config) is False
    assert run.call_count == 0


def test_start_launch_runs_script_and_removes_it(workspace):
    seen = {}

    def fake_run(args, check=False):
        path = Path(args[0])
        seen["path"] = path
        seen["text"] = path.read_text()
        seen["executable"] = os.access(path, os.X_OK)
        return _completed(0)

    config = LaunchConfig(str(workspace), "alignment", "run.launch.py")
    with mock.patch("initpose.launcher.subprocess.run", side_effect=fake_run):
        assert CommandLauncher().start_launch(config) is True
    assert seen["text"].startswith("#!/bin/bash\n")
    assert "ros2 launch alignment run.launch.py" in seen["text"]
    assert "source install/setup.bash" in seen["text"]
    assert seen["executable"] is True
    assert not seen["path"].exists()


def test_start_launch_reports_failure(workspace):
    config = LaunchConfig(str(workspace), "alignment", "run.launch.py")
    with mock.patch("initpose.launcher.subprocess.run", return_value=_completed(3)):
        assert CommandLauncher().start_launch(config) is False


def test_execute_existed_bash_command_arguments():
    with mock.patch("initpose.launcher.subprocess.run", return_value=_completed(0)) as run:
        assert CommandLauncher().execute_existed_bash_command("point_lio.sh") is True
    args = run.call_args.args[0]
    assert args[0] == "gnome-terminal"
    assert args[-1] == "./point_lio.sh; exec bash"


def test_execute_existed_bash_command_failure_and_missing_terminal():
    launcher = CommandLauncher()
    with mock.patch("initpose.launcher.subprocess.run", return_value=_completed(1)):
        assert launcher.execute_existed_bash_command("x.sh") is False
    with mock.patch("initpose.launcher.subprocess.run", side_effect=FileNotFoundError):
        assert launcher.execute_existed_bash_command("x.sh") is False


def test_kill_no_processes():
    with mock.patch("initpose.launcher.subprocess.run", return_value=_completed(1, "")), \
            mock.patch("initpose.launcher.os.kill") as kill:
        assert kill_existing_process("alignment", "run.launch.py") is True
    assert kill.call_count == 0


def test_kill_search_fails():
    with mock.patch("initpose.launcher.subprocess.run", side_effect=FileNotFoundError):
        assert kill_existing_process("alignment", "run.launch.py") is False


def _fake_kill(alive=(), unkillable=()):
    calls = []

    def kill(pid, sig):
        calls.append((pid, sig))
        if sig == 0:
            if pid in alive:
                return
            raise ProcessLookupError
        if pid in unkillable:
            raise PermissionError

    return kill, calls


def test_kill_terminates_all():
    kill, calls = _fake_kill()
    with mock.patch("initpose.launcher.subprocess.run", return_value=_completed(0, "123\n456\n")), \
            mock.patch("initpose.launcher.os.kill", side_effect=kill), \
            mock.patch("initpose.launcher.time.sleep") as sleep:
        assert kill_existing_process("alignment", "run.launch.py") is True
    assert (123, signal.SIGTERM) in calls
    assert (456, signal.SIGTERM) in calls
    assert sleep.call_count == 1


def test_kill_reports_survivor():
    kill, _ = _fake_kill(alive={456})
    with mock.patch("initpose.launcher.subprocess.run", return_value=_completed(0, "123\n456\n")), \
            mock.patch("initpose.launcher.os.kill", side_effect=kill), \
            mock.patch("initpose.launcher.time.sleep"):
        assert kill_existing_process("alignment", "run.launch.py") is False


def test_kill_falls_back_to_sigkill():
    kill, calls = _fake_kill(unkillable={123})
    with mock.patch("initpose.launcher.subprocess.run", return_value=_completed(0, "123\n")), \
            mock.patch("initpose.launcher.os.kill", side_effect=kill), \
            mock.patch("initpose.launcher.time.sleep"):
        assert kill_existing_process("alignment", "run.launch.py") is False
    assert (123, signal.SIGKILL) in calls