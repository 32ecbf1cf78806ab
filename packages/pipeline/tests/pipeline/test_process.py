from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable

import pytest

from appsec_pipeline.core import Cancelled, CommandFailed, CommandTimeout
from appsec_pipeline.pipeline import CancelToken, merge_env, run_command


def test_run_command_captures_output(tmp_path: Path) -> None:
    res = run_command(
        ["sh", "-c", 'echo "out $GREETING"; echo err >&2'],
        workdir=tmp_path,
        env={"GREETING": "hi"},
    )
    assert res.ok
    assert res.stdout.strip() == "out hi"
    assert res.stderr.strip() == "err"


def test_run_command_failure_carries_stderr(tmp_path: Path) -> None:
    with pytest.raises(CommandFailed) as exc:
        run_command("echo broken >&2; exit 3", workdir=tmp_path)
    assert exc.value.exit_code == 3
    assert "broken" in exc.value.stderr

    res = run_command("exit 4", workdir=tmp_path, check=False)
    assert res.exit_code == 4 and not res.ok


def test_timeout_kills_the_whole_process_group(
    tmp_path: Path, pid_alive: Callable[[int], bool]
) -> None:
    pid_file = tmp_path / "child.pid"
    t0 = time.monotonic()
    with pytest.raises(CommandTimeout):
        run_command(
            f"sleep 30 & echo $! > {pid_file}; wait",
            workdir=tmp_path,
            timeout_s=0.5,
            grace_s=0.5,
        )
    assert time.monotonic() - t0 < 10

    child = int(pid_file.read_text().strip())
    deadline = time.monotonic() + 5
    while pid_alive(child) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not pid_alive(child)


def test_cancel_token_terminates_running_command(tmp_path: Path) -> None:
    token = CancelToken()
    threading.Timer(0.2, token.cancel, args=("stop",)).start()

    t0 = time.monotonic()
    with pytest.raises(Cancelled) as exc:
        run_command(["sleep", "30"], workdir=tmp_path, token=token, grace_s=0.5)
    assert exc.value.reason == "stop"
    assert time.monotonic() - t0 < 10


def test_already_cancelled_token_never_starts(tmp_path: Path) -> None:
    token = CancelToken()
    token.cancel("early")
    marker = tmp_path / "ran"
    with pytest.raises(Cancelled):
        run_command(f"touch {marker}", workdir=tmp_path, token=token)
    assert not marker.exists()


def test_log_file_has_secrets_redacted(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "stage.log"
    run_command(
        'echo "token is $API_TOKEN"',
        workdir=tmp_path,
        env={"API_TOKEN": "hunter2"},
        log_path=log_path,
        secrets=["hunter2"],
    )
    text = log_path.read_text()
    assert "hunter2" not in text
    assert "token is ****" in text
    assert "[exit=0" in text


def test_merge_env_later_layers_win() -> None:
    assert merge_env({"A": "1", "B": "1"}, None, {"B": "2"}, {"C": 3}) == {
        "A": "1",
        "B": "2",
        "C": "3",
    }
