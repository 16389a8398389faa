#!/usr/bin/env python3
"""Endpoint and field catalog for the Infinitome imaging-job API variants."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

DEFAULT_BASE_URL = "https://infinitome.cn.xijiabrainmap.com"
DEFAULT_VARIANT = "sessions"

TIMESTAMP_NONE = "none"
TIMESTAMP_DOWNLOAD = "download"
TIMESTAMP_POLICIES = (TIMESTAMP_NONE, TIMESTAMP_DOWNLOAD)


@dataclass(frozen=True)
class ApiVariant:
    name: str
    description: str
    login_path: str
    job_list_path: str
    job_list_method: str
    archive_path: str
    login_fields: Tuple[str, ...]
    requires_pin: bool
    uses_facility_id: bool
    job_list_limit: Optional[int]
    filename_timestamp: str

    def login_url(self, base_url: str) -> str:
        return _join(base_url, self.login_path)

    def job_list_url(self, base_url: str, facility_id: str = "") -> str:
        return _join(base_url, self.job_list_path.format(facility_id=facility_id))

    def archive_url(self, base_url: str, job_id: str, facility_id: str = "") -> str:
        return _join(base_url, self.archive_path.format(facility_id=facility_id, job_id=job_id))


def _join(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + "/" + path.lstrip("/")


VARIANTS: Dict[str, ApiVariant] = {
    "sessions": ApiVariant(
        name="sessions",
        description="Facility-scoped imaging sessions; PIN login, listing limited to 50.",
        login_path="/api/v1/auth/login",
        job_list_path="/api/v1/infinitome-sessions/{facility_id}/latest",
        job_list_method="POST",
        archive_path="/api/v1/jobs/{facility_id}/{job_id}/files",
        login_fields=("facilityCode", "username", "password", "pin"),
        requires_pin=True,
        uses_facility_id=True,
        job_list_limit=50,
        filename_timestamp=TIMESTAMP_NONE,
    ),
    "jobs": ApiVariant(
        name="jobs",
        description="Flat job list with patient ids; no PIN, download-time filename stamp.",
        login_path="/api/v1/auth/login",
        job_list_path="/api/v1/jobs",
        job_list_method="GET",
        archive_path="/api/v1/jobs/{job_id}/files",
        login_fields=("facilityCode", "username", "password"),
        requires_pin=False,
        uses_facility_id=False,
        job_list_limit=None,
        filename_timestamp=TIMESTAMP_DOWNLOAD,
    ),
}

VARIANT_ALIASES = {
    "a": "sessions",
    "b": "jobs",
    "session": "sessions",
    "job": "jobs",
}


def available_variants() -> List[str]:
    return sorted(VARIANTS.keys())


def resolve_variant(name: Optional[str]) -> ApiVariant:
    cleaned = (name or DEFAULT_VARIANT).strip().lower()
    cleaned = VARIANT_ALIASES.get(cleaned, cleaned)
    if cleaned not in VARIANTS:
        raise KeyError(f"Unknown API variant '{name}'. Choices: {', '.join(available_variants())}")
    return VARIANTS[cleaned]
