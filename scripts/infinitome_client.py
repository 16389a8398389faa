#!/usr/bin/env python3
"""HTTP client for the Infinitome imaging-job API: login, job listing, archive download."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import requests
from tqdm import tqdm

from infinitome_api_variants import DEFAULT_BASE_URL, TIMESTAMP_DOWNLOAD, ApiVariant, resolve_variant

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
ZERO_TIME = datetime(1, 1, 1)
FILENAME_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class InfinitomeError(RuntimeError):
    """Failure of one API phase.

    ``kind`` is one of ``credentials``, ``status``, ``decode``, ``network``
    or ``io``.
    """

    phase = "api"

    def __init__(self, kind: str, detail: str, status_code: Optional[int] = None) -> None:
        self.kind = kind
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{self.phase} failed ({kind}): {detail}")


class AuthError(InfinitomeError):
    phase = "login"


class ListError(InfinitomeError):
    phase = "job listing"


class DownloadError(InfinitomeError):
    phase = "archive download"


@dataclass(frozen=True)
class Credentials:
    facility: str
    username: str
    password: str = field(repr=False)
    pin: Optional[str] = field(default=None, repr=False)

    def missing_fields(self, require_pin: bool) -> List[str]:
        missing = [name for name in ("facility", "username", "password") if not getattr(self, name)]
        if require_pin and not self.pin:
            missing.append("pin")
        return missing


@dataclass(frozen=True)
class Session:
    """Authentication state returned by login.

    Holds the response cookies as plain name/value pairs so it can be attached
    to any outgoing request without relying on a client-side cookie jar.
    """

    cookies: Tuple[Tuple[str, str], ...] = ()
    facility_id: Optional[str] = None

    @classmethod
    def from_response(cls, response: requests.Response, facility_id: Optional[str] = None) -> "Session":
        pairs = tuple((cookie.name, cookie.value or "") for cookie in response.cookies)
        return cls(cookies=pairs, facility_id=facility_id)

    def cookie_header(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self.cookies)

    def attach(self, headers: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        attached = dict(headers or {})
        if self.cookies:
            attached["Cookie"] = self.cookie_header()
        return attached

    def __bool__(self) -> bool:
        return bool(self.cookies)


@dataclass(frozen=True)
class JobDescriptor:
    job_id: str
    patient_id: str


@dataclass(frozen=True)
class ArchiveResult:
    path: Path
    bytes_written: int


def format_exception_message(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return text
    rep = repr(exc).strip()
    if rep and rep != f"{type(exc).__name__}()":
        return rep
    return type(exc).__name__


def parse_api_datetime(value: str) -> Optional[datetime]:
    if not value:
        return None
    candidate = value.strip().replace("Z", "+00:00")
    # Sub-second precision is not part of the patient id.
    candidate = re.sub(r"(T\d{2}:\d{2}:\d{2})\.\d+", r"\1", candidate)
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def format_patient_timestamp(value: datetime) -> str:
    # strftime does not zero-pad years below 1000 on every platform.
    return (
        f"{value.year:04d}{value.month:02d}{value.day:02d}_"
        f"{value.hour:02d}{value.minute:02d}{value.second:02d}"
    )


def safe_filename(value: str) -> str:
    trimmed = value.strip()
    trimmed = trimmed.replace("\\", "_").replace("/", "_")
    return re.sub(r"[^A-Za-z0-9._-]+", "_", trimmed) or "_"


def archive_filename(job: JobDescriptor, timestamp: Optional[datetime] = None) -> str:
    parts = [safe_filename(job.job_id), safe_filename(job.patient_id)]
    if timestamp is not None:
        parts.append(timestamp.strftime(FILENAME_TIMESTAMP_FORMAT))
    return "_".join(parts) + ".zip"


def _decode_json(response: requests.Response, error_cls: type) -> object:
    try:
        return response.json()
    except ValueError as exc:
        raise error_cls("decode", f"response body is not valid JSON ({format_exception_message(exc)})") from exc


def _text_field(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    return str(value).strip()


def session_jobs_from_payload(payload: object) -> List[JobDescriptor]:
    if not isinstance(payload, dict):
        raise ListError("decode", "expected a JSON object with a 'session' mapping")
    sessions = payload.get("session") or {}
    if not isinstance(sessions, dict):
        raise ListError("decode", "'session' is not a JSON object")

    jobs: List[JobDescriptor] = []
    for key, detail in sessions.items():
        if not isinstance(detail, dict):
            raise ListError("decode", f"session {key!r} is not a JSON object")
        job = detail.get("job") or {}
        if not isinstance(job, dict):
            raise ListError("decode", f"session {key!r} has a malformed 'job' entry")
        job_id = _text_field(job, "id")
        if not job_id:
            logger.warning("Skipping session %s: no job id in listing", key)
            continue
        raw_updated = _text_field(job, "updatedAt")
        # An absent or null timestamp stands for the zero time.
        updated_at = parse_api_datetime(raw_updated) if raw_updated else ZERO_TIME
        if updated_at is None:
            raise ListError("decode", f"job {job_id} has an invalid updatedAt {raw_updated!r}")
        uid = _text_field(detail, "imagingSessionUid")
        patient_id = f"{uid}_{format_patient_timestamp(updated_at)}"
        jobs.append(JobDescriptor(job_id=job_id, patient_id=patient_id))
    return jobs


def flat_jobs_from_payload(payload: object) -> List[JobDescriptor]:
    if not isinstance(payload, list):
        raise ListError("decode", "expected a JSON array of jobs")

    jobs: List[JobDescriptor] = []
    for index, row in enumerate(payload):
        if not isinstance(row, dict):
            raise ListError("decode", f"job entry {index} is not a JSON object")
        job_id = _text_field(row, "jobId")
        if not job_id:
            logger.warning("Skipping job entry %d: no job id in listing", index)
            continue
        jobs.append(JobDescriptor(job_id=job_id, patient_id=_text_field(row, "patientId")))
    return jobs


def authenticate(
    http: requests.Session,
    credentials: Credentials,
    variant: ApiVariant,
    base_url: str = DEFAULT_BASE_URL,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> Session:
    missing = credentials.missing_fields(variant.requires_pin)
    if missing:
        raise AuthError("credentials", f"missing credentials: {', '.join(missing)}")

    values = {
        "facilityCode": credentials.facility,
        "username": credentials.username,
        "password": credentials.password,
        "pin": credentials.pin or "",
    }
    payload = {key: values[key] for key in variant.login_fields}
    try:
        response = http.post(
            variant.login_url(base_url),
            json=payload,
            timeout=timeout_seconds,
        )
    except requests.RequestException as exc:
        raise AuthError("network", format_exception_message(exc)) from exc

    with response:
        if response.status_code != 200:
            raise AuthError("status", f"HTTP {response.status_code}", status_code=response.status_code)

        facility_id: Optional[str] = None
        if variant.uses_facility_id:
            body = _decode_json(response, AuthError)
            facility = body.get("facility") if isinstance(body, dict) else None
            facility_id = _text_field(facility, "id") if isinstance(facility, dict) else ""
            if not facility_id:
                raise AuthError("decode", "login response has no facility.id")

        session = Session.from_response(response, facility_id=facility_id)

    if not session:
        logger.warning("Login response for %s carried no session cookies", credentials.username)
    logger.info("User %s logged in to facility %s", credentials.username, credentials.facility)
    return session


class InfinitomeClient:
    def __init__(
        self,
        variant: Optional[ApiVariant] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        filename_timestamp: Optional[str] = None,
        show_progress: bool = True,
    ) -> None:
        self.variant = variant or resolve_variant(None)
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.filename_timestamp = filename_timestamp or self.variant.filename_timestamp
        self.show_progress = show_progress
        self.http = requests.Session()

    def __enter__(self) -> "InfinitomeClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.http.close()

    def authenticate(self, credentials: Credentials) -> Session:
        session = authenticate(
            self.http,
            credentials,
            self.variant,
            base_url=self.base_url,
            timeout_seconds=self.timeout_seconds,
        )
        # Cookies travel only through Session.attach from here on.
        self.http.cookies.clear()
        return session

    def list_jobs(self, session: Session) -> List[JobDescriptor]:
        url = self.variant.job_list_url(self.base_url, session.facility_id or "")
        kwargs: Dict[str, object] = {"timeout": self.timeout_seconds}
        if self.variant.job_list_method == "POST":
            kwargs["json"] = {"limit": self.variant.job_list_limit}
        try:
            response = self.http.request(
                self.variant.job_list_method,
                url,
                headers=session.attach(),
                **kwargs,
            )
        except requests.RequestException as exc:
            raise ListError("network", format_exception_message(exc)) from exc

        with response:
            if response.status_code != 200:
                raise ListError("status", f"HTTP {response.status_code}", status_code=response.status_code)
            payload = _decode_json(response, ListError)

        if self.variant.uses_facility_id:
            jobs = session_jobs_from_payload(payload)
        else:
            jobs = flat_jobs_from_payload(payload)
        logger.info("Listed %d job(s) from %s", len(jobs), url)
        return jobs

    def archive_path(self, job: JobDescriptor, outdir: Path, now: Optional[datetime] = None) -> Path:
        timestamp = None
        if self.filename_timestamp == TIMESTAMP_DOWNLOAD:
            timestamp = now or datetime.now()
        return Path(outdir) / archive_filename(job, timestamp)

    def download_archive(self, session: Session, job: JobDescriptor, outdir: Path) -> ArchiveResult:
        logger.info("Downloading archive for job %s (patient %s)", job.job_id, job.patient_id)
        url = self.variant.archive_url(self.base_url, job.job_id, session.facility_id or "")
        logger.debug("GET %s", url)
        try:
            response = self.http.get(
                url,
                headers=session.attach(),
                stream=True,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise DownloadError("network", format_exception_message(exc)) from exc

        with response:
            if response.status_code != 200:
                raise DownloadError("status", f"HTTP {response.status_code}", status_code=response.status_code)
            destination = self.archive_path(job, outdir)
            written = self._stream_to_file(response, destination)

        logger.info("Saved archive for job %s to %s (%d bytes)", job.job_id, destination, written)
        return ArchiveResult(path=destination, bytes_written=written)

    def _stream_to_file(self, response: requests.Response, destination: Path) -> int:
        total = response.headers.get("Content-Length")
        written = 0
        try:
            handle = open(destination, "wb")
        except OSError as exc:
            raise DownloadError("io", f"cannot create {destination}: {format_exception_message(exc)}") from exc
        with handle, tqdm(
            total=int(total) if total and total.isdigit() else None,
            unit="B",
            unit_scale=True,
            desc=destination.name,
            disable=None if self.show_progress else True,
            leave=False,
        ) as pbar:
            try:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    try:
                        handle.write(chunk)
                    except OSError as exc:
                        raise DownloadError(
                            "io", f"cannot write {destination}: {format_exception_message(exc)}"
                        ) from exc
                    written += len(chunk)
                    pbar.update(len(chunk))
            except requests.RequestException as exc:
                raise DownloadError("network", format_exception_message(exc)) from exc
        return written
