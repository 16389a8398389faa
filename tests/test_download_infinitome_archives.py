from __future__ import annotations

import json
import logging
import re
from pathlib import Path

import pytest
import responses

import download_infinitome_archives as cli
from infinitome_api_variants import resolve_variant
from infinitome_client import Credentials

BASE = "https://api.example.test"
LOGIN_URL = f"{BASE}/api/v1/auth/login"
SESSIONS_URL = f"{BASE}/api/v1/infinitome-sessions/FID-9/latest"
JOBS_URL = f"{BASE}/api/v1/jobs"

CREDENTIAL_ENV = {"FACILITY": "FAC01", "USERNAME": "alice", "PASSWORD": "s3cret", "PIN": "1234"}


def make_config(tmp_path: Path, variant: str = "sessions", **overrides: object) -> cli.DownloaderConfig:
    kwargs = dict(
        credentials=Credentials("FAC01", "alice", "s3cret", "1234"),
        outdir=tmp_path / "out",
        variant=resolve_variant(variant),
        base_url=BASE,
        timeout_seconds=5,
        show_progress=False,
    )
    kwargs.update(overrides)
    return cli.DownloaderConfig(**kwargs)


def add_login(status: int = 200) -> None:
    responses.add(
        responses.POST,
        LOGIN_URL,
        json={"facility": {"id": "FID-9"}},
        headers={"Set-Cookie": "sid=abc123; Path=/"},
        status=status,
    )


def add_job_list(count: int) -> None:
    sessions = {
        f"s{i}": {
            "imagingSessionUid": f"UID{i}",
            "job": {"id": f"J{i}", "updatedAt": "2024-03-05T10:20:30Z"},
        }
        for i in range(count)
    }
    responses.add(responses.POST, SESSIONS_URL, json={"session": sessions})


def test_first_non_empty_skips_blank_values():
    assert cli.first_non_empty(None, "", "  ", "value", "other") == "value"
    assert cli.first_non_empty(None, "") is None


def test_env_value_is_plain_lookup():
    assert cli.env_value("FACILITY", {"FACILITY": ""}) == ""
    assert cli.env_value("FACILITY", {}) is None


def test_build_config_falls_back_to_environment(tmp_path):
    parser, args = cli.parse_args([])
    config = cli.build_config(args, dict(CREDENTIAL_ENV, OUTDIR=str(tmp_path)), parser)

    assert config.credentials == Credentials("FAC01", "alice", "s3cret", "1234")
    assert config.outdir == tmp_path
    assert config.variant.name == "sessions"
    assert config.logfile is None


def test_flag_beats_config_file_beats_environment(tmp_path):
    config_path = tmp_path / "infinitome.yaml"
    config_path.write_text(
        "credentials:\n  username: from-config\n  password: config-pass\ndownload:\n  outdir: config-out\n",
        encoding="utf-8",
    )
    parser, args = cli.parse_args(["--config", str(config_path), "-u", "from-flag"])
    config = cli.build_config(args, dict(CREDENTIAL_ENV, OUTDIR="env-out"), parser)

    assert config.credentials.username == "from-flag"
    assert config.credentials.password == "config-pass"
    assert config.credentials.facility == "FAC01"
    assert config.outdir == Path("config-out")


def test_empty_environment_values_count_as_missing():
    parser, args = cli.parse_args(["-f", "FAC01", "-u", "alice", "-p", "s3cret"])
    with pytest.raises(SystemExit) as excinfo:
        cli.build_config(args, {"PIN": ""}, parser)
    assert excinfo.value.code == 2


def test_missing_pin_allowed_for_jobs_variant():
    parser, args = cli.parse_args(["-f", "FAC01", "-u", "alice", "-p", "s3cret", "--variant", "jobs"])
    config = cli.build_config(args, {}, parser)

    assert config.variant.name == "jobs"
    assert config.credentials.pin is None
    assert config.outdir == Path("./")


def test_unknown_variant_is_a_usage_error():
    parser, args = cli.parse_args(["--variant", "legacy"])
    with pytest.raises(SystemExit) as excinfo:
        cli.build_config(args, CREDENTIAL_ENV, parser)
    assert excinfo.value.code == 2


def test_json_config_file_sets_options(tmp_path):
    config_path = tmp_path / "infinitome.json"
    config_path.write_text(
        json.dumps(
            {
                "api": {"variant": "jobs", "base_url": BASE},
                "network": {"timeout_seconds": 12},
                "download": {"progress": "off", "filename_timestamp": "none"},
            }
        ),
        encoding="utf-8",
    )
    parser, args = cli.parse_args(["--config", str(config_path)])
    config = cli.build_config(args, CREDENTIAL_ENV, parser)

    assert config.variant.name == "jobs"
    assert config.base_url == BASE
    assert config.timeout_seconds == 12.0
    assert config.show_progress is False
    assert config.filename_timestamp == "none"


def test_missing_config_file_exits(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        cli.parse_args(["--config", str(tmp_path / "missing.yaml")])
    assert "Config file not found" in str(excinfo.value.code)


def test_log_event_quotes_values_with_spaces(caplog):
    caplog.set_level(logging.INFO, logger="infinitome")
    cli.log_event("RUN_START", user="alice", outdir="my archives", count=3, ok=True)
    assert caplog.messages[-1] == 'RUN_START user=alice outdir="my archives" count=3 ok=true'


def test_configure_logging_appends_to_logfile(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    logfile = tmp_path / "run.log"
    try:
        cli.configure_logging(str(logfile), "INFO")
        logging.getLogger("infinitome").info("hello from the run")
        for handler in root.handlers:
            handler.flush()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

    assert re.search(r"INFO hello from the run", logfile.read_text(encoding="utf-8"))


def test_configure_logging_unwritable_path_exits(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        cli.configure_logging(str(tmp_path / "no-such-dir" / "run.log"))
    assert "Cannot open log file" in str(excinfo.value.code)


@responses.activate
def test_run_downloads_every_listed_job(tmp_path):
    add_login()
    add_job_list(3)
    for i in range(3):
        responses.add(responses.GET, f"{BASE}/api/v1/jobs/FID-9/J{i}/files", body=f"zip-{i}".encode())

    stats = cli.run(make_config(tmp_path))

    names = sorted(path.name for path in (tmp_path / "out").iterdir())
    assert names == [f"J{i}_UID{i}_20240305_102030.zip" for i in range(3)]
    assert (stats.listed, stats.downloaded, stats.failures) == (3, 3, 0)
    assert stats.bytes_written == 15


@responses.activate
def test_run_continues_after_single_download_failure(tmp_path, caplog):
    caplog.set_level(logging.INFO)
    add_login()
    add_job_list(4)
    for i in range(4):
        status = 500 if i == 1 else 200
        responses.add(responses.GET, f"{BASE}/api/v1/jobs/FID-9/J{i}/files", body=b"zip", status=status)

    stats = cli.run(make_config(tmp_path))

    written = sorted(path.name for path in (tmp_path / "out").iterdir())
    assert len(written) == 3
    assert not any(name.startswith("J1_") for name in written)
    assert (stats.downloaded, stats.failures) == (3, 1)
    assert any("J1" in record.getMessage() and record.levelno == logging.ERROR for record in caplog.records)


@responses.activate
def test_run_with_empty_job_list_writes_nothing(tmp_path, caplog):
    caplog.set_level(logging.INFO)
    add_login()
    add_job_list(0)

    stats = cli.run(make_config(tmp_path))

    assert list((tmp_path / "out").iterdir()) == []
    assert stats.listed == 0
    assert not [message for message in caplog.messages if message.startswith("Downloading archive")]
    assert len(responses.calls) == 2


@responses.activate
def test_run_login_failure_is_fatal_and_stops(tmp_path):
    add_login(status=401)

    with pytest.raises(SystemExit) as excinfo:
        cli.run(make_config(tmp_path))

    assert excinfo.value.code == 1
    assert len(responses.calls) == 1
    assert not (tmp_path / "out").exists()


@responses.activate
def test_run_list_failure_is_fatal(tmp_path):
    add_login()
    responses.add(responses.POST, SESSIONS_URL, status=502)

    with pytest.raises(SystemExit) as excinfo:
        cli.run(make_config(tmp_path))

    assert excinfo.value.code == 1
    assert not (tmp_path / "out").exists()


@responses.activate
def test_run_output_directory_failure_is_fatal(tmp_path):
    add_login()
    add_job_list(1)
    blocker = tmp_path / "out"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        cli.run(make_config(tmp_path, outdir=blocker / "nested"))

    assert excinfo.value.code == 1
    assert len(responses.calls) == 2


@responses.activate
def test_run_list_only_does_not_download(tmp_path, caplog):
    caplog.set_level(logging.INFO)
    add_login()
    add_job_list(2)

    stats = cli.run(make_config(tmp_path, list_only=True))

    assert stats.listed == 2
    assert not (tmp_path / "out").exists()
    assert sum(1 for message in caplog.messages if message.startswith("JOB ")) == 2


@responses.activate
def test_main_jobs_variant_end_to_end(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda logfile, level="INFO": None)
    for name in ("FACILITY", "USERNAME", "PASSWORD", "PIN", "OUTDIR", "LOGFILE", "INFINITOME_VARIANT", "INFINITOME_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PASSWORD", "s3cret")
    responses.add(responses.POST, LOGIN_URL, headers={"Set-Cookie": "sid=abc123; Path=/"})
    responses.add(responses.GET, JOBS_URL, json=[{"jobId": "J1", "patientId": "P1"}])
    responses.add(responses.GET, f"{BASE}/api/v1/jobs/J1/files", body=b"zip")

    outdir = tmp_path / "archives"
    exit_code = cli.main(
        [
            "--env-file",
            str(tmp_path / "missing.env"),
            "--variant",
            "jobs",
            "--base-url",
            BASE,
            "-f",
            "FAC01",
            "-u",
            "alice",
            "-o",
            str(outdir),
            "--no-progress",
        ]
    )

    assert exit_code == 0
    [archive] = list(outdir.iterdir())
    assert re.fullmatch(r"J1_P1_\d{14}\.zip", archive.name)


def test_main_missing_credentials_prints_usage(tmp_path, monkeypatch, capsys):
    for name in ("FACILITY", "USERNAME", "PASSWORD", "PIN", "INFINITOME_VARIANT"):
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--env-file", str(tmp_path / "missing.env"), "-f", "FAC01"])

    assert excinfo.value.code == 2
    assert "usage:" in capsys.readouterr().err


def test_main_loads_dotenv_file(tmp_path, monkeypatch):
    for name in ("FACILITY", "USERNAME", "PASSWORD", "PIN", "OUTDIR", "INFINITOME_VARIANT"):
        monkeypatch.delenv(name, raising=False)
    env_file = tmp_path / "creds.env"
    env_file.write_text("FACILITY=FAC01\nUSERNAME=alice\nPASSWORD=s3cret\nPIN=1234\n", encoding="utf-8")
    captured = {}

    def fake_run(config):
        captured["config"] = config
        return cli.DownloadStats()

    monkeypatch.setattr(cli, "configure_logging", lambda logfile, level="INFO": None)
    monkeypatch.setattr(cli, "run", fake_run)
    try:
        assert cli.main(["--env-file", str(env_file)]) == 0
    finally:
        for name in ("FACILITY", "USERNAME", "PASSWORD", "PIN"):
            monkeypatch.delenv(name, raising=False)

    assert captured["config"].credentials == Credentials("FAC01", "alice", "s3cret", "1234")
