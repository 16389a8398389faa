#!/usr/bin/env python3
"""Download Infinitome job result archives for a facility.

Credentials and options come from command-line flags, an optional YAML/JSON
config file, or environment variables (a local ``.env`` file is loaded first).

Usage:
    python download_infinitome_archives.py -f FAC01 -u alice -p secret -n 1234 -o archives/
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, NoReturn, Optional, Sequence, Tuple

import yaml
from dotenv import load_dotenv

from infinitome_api_variants import (
    DEFAULT_BASE_URL,
    DEFAULT_VARIANT,
    TIMESTAMP_POLICIES,
    ApiVariant,
    available_variants,
    resolve_variant,
)
from infinitome_client import (
    DEFAULT_TIMEOUT_SECONDS,
    Credentials,
    DownloadError,
    InfinitomeClient,
    InfinitomeError,
)

logger = logging.getLogger("infinitome")

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DEFAULT_OUTDIR = "./"
DEFAULT_ENV_FILE = ".env"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

ENV_VARS = {
    "facility": "FACILITY",
    "username": "USERNAME",
    "password": "PASSWORD",
    "pin": "PIN",
    "outdir": "OUTDIR",
    "logfile": "LOGFILE",
    "variant": "INFINITOME_VARIANT",
    "base_url": "INFINITOME_BASE_URL",
}


@dataclass
class DownloadStats:
    listed: int = 0
    downloaded: int = 0
    failures: int = 0
    bytes_written: int = 0


@dataclass(frozen=True)
class DownloaderConfig:
    credentials: Credentials
    outdir: Path
    variant: ApiVariant
    base_url: str = DEFAULT_BASE_URL
    logfile: Optional[str] = None
    log_level: str = "INFO"
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    filename_timestamp: Optional[str] = None
    show_progress: bool = True
    list_only: bool = False


def _log_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return "null"
    text = str(value)
    if re.fullmatch(r"[A-Za-z0-9._:/+\-]+", text):
        return text
    return json.dumps(text, ensure_ascii=True)


def log_event(event: str, level: int = logging.INFO, **fields: object) -> None:
    parts = [event]
    for key, value in fields.items():
        parts.append(f"{key}={_log_value(value)}")
    logger.log(level, " ".join(parts))


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise ValueError(f"Cannot parse boolean from value '{value}'.")


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SystemExit(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8")
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(raw)
    elif suffix == ".json":
        data = json.loads(raw)
    else:
        raise SystemExit("Unsupported config file extension. Use .yaml/.yml or .json.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit("Config root must be a mapping/object.")
    return data


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for nested_key, nested_value in value.items():
                flattened[f"{key}_{nested_key}"] = nested_value
        else:
            flattened[key] = value
    return flattened


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    defaults: Dict[str, Any] = {}
    scalar_map = {
        "facility": "facility",
        "credentials_facility": "facility",
        "username": "username",
        "credentials_username": "username",
        "password": "password",
        "credentials_password": "password",
        "pin": "pin",
        "credentials_pin": "pin",
        "outdir": "outdir",
        "download_outdir": "outdir",
        "filename_timestamp": "filename_timestamp",
        "download_filename_timestamp": "filename_timestamp",
        "logfile": "logfile",
        "logging_logfile": "logfile",
        "log_level": "log_level",
        "logging_level": "log_level",
        "variant": "variant",
        "api_variant": "variant",
        "base_url": "base_url",
        "api_base_url": "base_url",
        "timeout_seconds": "timeout_seconds",
        "network_timeout_seconds": "timeout_seconds",
    }
    bool_map = {
        "progress": "progress",
        "download_progress": "progress",
    }

    for source_key, target_key in scalar_map.items():
        if source_key in cfg and cfg[source_key] is not None:
            defaults[target_key] = str(cfg[source_key])
    for source_key, target_key in bool_map.items():
        if source_key in cfg:
            try:
                defaults[target_key] = _parse_bool(cfg[source_key])
            except ValueError as exc:
                raise SystemExit(f"Config key '{source_key}': {exc}") from exc
    if "timeout_seconds" in defaults:
        try:
            defaults["timeout_seconds"] = float(defaults["timeout_seconds"])
        except ValueError as exc:
            raise SystemExit("Config key 'timeout_seconds' must be a number.") from exc
    return defaults


def env_value(name: str, environ: Mapping[str, str]) -> Optional[str]:
    return environ.get(name)


def first_non_empty(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value is not None and value.strip():
            return value
    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--config", help="Path to YAML/JSON config file.")
    parser.add_argument(
        "--env-file",
        default=DEFAULT_ENV_FILE,
        help=f"Dotenv file loaded before reading environment variables (default: {DEFAULT_ENV_FILE}).",
    )
    parser.add_argument("-f", "--facility", help="Facility code used to log in. Falls back to FACILITY.")
    parser.add_argument("-u", "--username", help="Login user name. Falls back to USERNAME.")
    parser.add_argument("-p", "--password", help="Login password. Falls back to PASSWORD.")
    parser.add_argument("-n", "--pin", help="Login PIN (sessions variant only). Falls back to PIN.")
    parser.add_argument(
        "-o",
        "--outdir",
        "--outDir",
        dest="outdir",
        help=f"Directory archives are written to. Falls back to OUTDIR, then '{DEFAULT_OUTDIR}'.",
    )
    parser.add_argument(
        "-l",
        "--logfile",
        help="Append log output to this file instead of the console. Falls back to LOGFILE.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=LOG_LEVELS,
        help="Logging verbosity.",
    )
    parser.add_argument(
        "--variant",
        help=(
            f"API variant: {', '.join(available_variants())}. "
            f"Falls back to INFINITOME_VARIANT, then '{DEFAULT_VARIANT}'."
        ),
    )
    parser.add_argument(
        "--base-url",
        help=f"API root URL. Falls back to INFINITOME_BASE_URL, then {DEFAULT_BASE_URL}.",
    )
    parser.add_argument(
        "--filename-timestamp",
        choices=TIMESTAMP_POLICIES,
        default=None,
        help="Append the download time to archive file names. Defaults to the variant's policy.",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help="Per-request timeout in seconds.",
    )
    parser.add_argument(
        "--no-progress",
        dest="progress",
        action="store_false",
        help="Disable the per-archive progress bar.",
    )
    parser.add_argument(
        "--list-jobs",
        action="store_true",
        help="Log in, print the available jobs and exit without downloading.",
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[argparse.ArgumentParser, argparse.Namespace]:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config")
    pre_args, _ = pre_parser.parse_known_args(argv)

    parser = build_parser()
    if pre_args.config:
        config_defaults = config_to_parser_defaults(load_config_file(Path(pre_args.config)))
        if config_defaults:
            parser.set_defaults(**config_defaults)
    return parser, parser.parse_args(argv)


def build_config(
    args: argparse.Namespace,
    environ: Mapping[str, str],
    parser: Optional[argparse.ArgumentParser] = None,
) -> DownloaderConfig:
    def resolved(name: str) -> Optional[str]:
        return first_non_empty(getattr(args, name, None), env_value(ENV_VARS[name], environ))

    def fail(message: str) -> NoReturn:
        if parser is not None:
            parser.error(message)
        raise SystemExit(message)

    try:
        variant = resolve_variant(resolved("variant"))
    except KeyError as exc:
        fail(str(exc.args[0]))

    credentials = Credentials(
        facility=resolved("facility") or "",
        username=resolved("username") or "",
        password=resolved("password") or "",
        pin=resolved("pin"),
    )
    missing = credentials.missing_fields(variant.requires_pin)
    if missing:
        flags = ", ".join(f"--{name}" for name in missing)
        env_names = ", ".join(ENV_VARS[name] for name in missing)
        fail(f"missing required credentials: set {flags} or env vars {env_names}")

    if args.filename_timestamp is not None and args.filename_timestamp not in TIMESTAMP_POLICIES:
        fail(f"--filename-timestamp must be one of: {', '.join(TIMESTAMP_POLICIES)}")
    if args.timeout_seconds <= 0:
        fail("--timeout-seconds must be greater than 0.")
    log_level = str(args.log_level).upper()
    if log_level not in LOG_LEVELS:
        fail(f"--log-level must be one of: {', '.join(LOG_LEVELS)}")

    return DownloaderConfig(
        credentials=credentials,
        outdir=Path(resolved("outdir") or DEFAULT_OUTDIR),
        variant=variant,
        base_url=resolved("base_url") or DEFAULT_BASE_URL,
        logfile=resolved("logfile"),
        log_level=log_level,
        timeout_seconds=float(args.timeout_seconds),
        filename_timestamp=args.filename_timestamp,
        show_progress=bool(args.progress),
        list_only=bool(args.list_jobs),
    )


def configure_logging(logfile: Optional[str], level: str = "INFO") -> None:
    if logfile:
        try:
            handler: logging.Handler = logging.FileHandler(logfile, mode="a", encoding="utf-8")
        except OSError as exc:
            raise SystemExit(f"Cannot open log file {logfile}: {exc}") from exc
    else:
        handler = logging.StreamHandler(sys.stderr)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[handler], force=True)


def _fatal(message: str, exc: BaseException) -> None:
    logger.critical("%s: %s", message, exc)
    raise SystemExit(1) from exc


def run(config: DownloaderConfig, client: Optional[InfinitomeClient] = None) -> DownloadStats:
    stats = DownloadStats()
    owns_client = client is None
    if client is None:
        client = InfinitomeClient(
            variant=config.variant,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            filename_timestamp=config.filename_timestamp,
            show_progress=config.show_progress,
        )

    try:
        log_event(
            "RUN_START",
            variant=config.variant.name,
            base_url=config.base_url,
            facility=config.credentials.facility,
            user=config.credentials.username,
            outdir=config.outdir,
        )
        try:
            session = client.authenticate(config.credentials)
        except InfinitomeError as exc:
            _fatal("Login failed", exc)

        try:
            jobs = client.list_jobs(session)
        except InfinitomeError as exc:
            _fatal("Could not list jobs", exc)
        stats.listed = len(jobs)

        if config.list_only:
            for job in jobs:
                log_event("JOB", job_id=job.job_id, patient_id=job.patient_id)
            return stats

        try:
            config.outdir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _fatal(f"Could not create output directory {config.outdir}", exc)

        for job in jobs:
            try:
                result = client.download_archive(session, job, config.outdir)
            except DownloadError as exc:
                stats.failures += 1
                logger.error("Archive download for job %s failed: %s", job.job_id, exc)
                continue
            stats.downloaded += 1
            stats.bytes_written += result.bytes_written
    finally:
        if owns_client:
            client.close()

    log_event(
        "RUN_SUMMARY",
        listed=stats.listed,
        downloaded=stats.downloaded,
        failures=stats.failures,
        bytes=stats.bytes_written,
    )
    return stats


def main(argv: Optional[List[str]] = None) -> int:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--env-file", default=DEFAULT_ENV_FILE)
    pre_args, _ = pre_parser.parse_known_args(argv)
    load_dotenv(pre_args.env_file, override=False)

    parser, args = parse_args(argv)
    config = build_config(args, os.environ, parser)
    configure_logging(config.logfile, config.log_level)
    run(config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
