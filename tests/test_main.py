import json
import logging
import os
import signal
import time
from pathlib import Path

import pytest
import yaml

from bootimage import main as main_mod
from bootimage import tasks as tasks_mod
from bootimage.lib.lock import run_lock


@pytest.fixture
def config_file(project: Path) -> Path:
    path = project / "bootimage.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "project_name": "mikanos",
                "target_dir": str(project / "target"),
                "settle_seconds": 0,
                "firmware": {"template": str(project / "DEFAULT_OVMF_VARS.fd")},
            }
        ),
        encoding="utf-8",
    )
    return path


def run(project, config_file, host, task, args=(), record="run.json"):
    return main_mod.run(
        task=task,
        args=args,
        config_path=str(config_file),
        log_path=str(project / "bootimage.log"),
        record_path=str(project / record),
        host=host,
    )


def test_run_entry_point_writes_record(project, config_file, host, tools):
    assert run(project, config_file, host, "run", ["-nographic"]) == 0

    record = json.loads((project / "run.json").read_text())
    assert record["entry"] == "run"
    assert record["args"] == ["-nographic"]
    assert record["exit_code"] == 0
    assert record["ran_tasks"][-1] == "run"
    assert record["errors"] == []
    assert tools.mounts == {}
    assert (project / "target" / "OVMF_VARS.fd").exists()


def test_emulator_exit_code_is_process_exit_code(project, config_file, host, tools):
    tools.qemu_status = 33
    assert run(project, config_file, host, "run") == 33

    record = json.loads((project / "run.json").read_text())
    assert record["exit_code"] == 33
    assert record["errors"][0]["task"] == "run"


def test_usb_without_drive_exits_nonzero(project, config_file, host, tools, caplog):
    with caplog.at_level(logging.ERROR):
        assert run(project, config_file, host, "usb") == 1

    assert "specify the drive" in caplog.text
    assert tools.calls == []
    # refused before the lock, so nothing under target/ was created
    assert not (project / "target").exists()
    record = json.loads((project / "run.json").read_text())
    assert record["ran_tasks"] == []
    assert record["errors"][0]["type"] == "ConfigError"


def test_unknown_task(project, config_file, host, tools, caplog):
    with caplog.at_level(logging.ERROR):
        assert run(project, config_file, host, "deploy") == 1
    assert "Unknown task: deploy" in caplog.text


def test_overlapping_run_is_refused(project, config_file, host, tools, caplog):
    with run_lock(project / "target" / ".bootimage.lock"):
        with caplog.at_level(logging.ERROR):
            assert run(project, config_file, host, "make-image") == 1
        # static analysis never touches the mount point
        assert run(project, config_file, host, "check") == 0

    assert "Another run holds" in caplog.text
    assert [argv[1] for argv in tools.commands()] == ["check", "check"]


def test_yaml_record_keeps_previous_run(project, config_file, host, tools):
    run(project, config_file, host, "build", record="run.yaml")
    run(project, config_file, host, "clean-firmware-vars", record="run.yaml")

    record = yaml.safe_load((project / "run.yaml").read_text())
    assert record["entry"] == "clean-firmware-vars"
    assert record["previous"] == {"entry": "build", "args": [], "exit_code": 0}


@pytest.fixture
def sigterm_handler():
    previous = signal.getsignal(signal.SIGTERM)
    yield
    signal.signal(signal.SIGTERM, previous)


def test_sigterm_while_mounted_still_unmounts(
    project, config_file, host, tools, monkeypatch, sigterm_handler
):
    def terminated_during_copy(**kw):
        assert tools.mounts
        os.kill(os.getpid(), signal.SIGTERM)
        # the handler runs on the main thread at the next bytecode boundary
        for _ in range(100):
            time.sleep(0.01)
        raise AssertionError("SIGTERM was not delivered")

    monkeypatch.setattr(main_mod, "detect_host", lambda **kw: host)
    monkeypatch.setattr(tasks_mod, "deploy_artifacts", terminated_during_copy)

    code = main_mod.main(
        [
            "--config", str(config_file),
            "--log", str(project / "bootimage.log"),
            "--record", str(project / "run.json"),
            "make-image",
        ]
    )

    assert code == 130
    assert tools.mounts == {}
    assert tools.names()[-1] == "umount"
    record = json.loads((project / "run.json").read_text())
    assert record["cleanups"] == ["umount"]
    assert record["exit_code"] == 130


def test_signal_exit_codes():
    assert main_mod._exit_code(-9) == 137
    assert main_mod._exit_code(2) == 2


def test_list_tasks(capsys):
    assert main_mod.main(["--list"]) == 0
    out = capsys.readouterr().out
    assert "make-image" in out
    assert "usb-arg-check" not in out
