#!/usr/bin/env python3
"""Post-deploy probe for the billing panel.

Checks liveness and database readiness, and optionally that this instance is
the one running the lifecycle jobs (``HEALTHCHECK_REQUIRE_SCHEDULER=true``).
Exits non-zero on the first check that keeps failing after retries.
"""

from __future__ import annotations

import os
import time
from datetime import datetime, timezone

import httpx

REQUIRED_JOBS = (
    "billing_cycle",
    "suspension_escalator",
    "cancellation_scheduler",
    "orphan_sweep",
)


class CheckFailed(Exception):
    pass


def fail(message: str) -> None:
    print(f"ERROR: {message}")
    raise SystemExit(1)


def normalize_base_url(base_url: str) -> str:
    url = (base_url or "").strip().rstrip("/")
    for suffix in ("/api/v1", "/api"):
        if url.endswith(suffix):
            return url[: -len(suffix)]
    return url


def env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


def fetch(client: httpx.Client, path: str, expected_status: str) -> dict:
    try:
        response = client.get(path)
    except httpx.HTTPError as exc:
        raise CheckFailed(f"{path} request failed: {exc}") from exc
    if response.status_code != 200:
        raise CheckFailed(f"{path} returned HTTP {response.status_code}: {response.text[:200]}")
    try:
        data = response.json()
    except ValueError as exc:
        raise CheckFailed(f"{path} did not return JSON") from exc
    if not isinstance(data, dict) or data.get("status") != expected_status:
        raise CheckFailed(f"{path} status mismatch: expected '{expected_status}', got {data!r}")
    return data


def check_jobs(data: dict, now: datetime) -> None:
    if not data.get("scheduler"):
        raise CheckFailed("lifecycle scheduler is not running on this instance")
    jobs = data.get("jobs") or {}
    missing = [job_id for job_id in REQUIRED_JOBS if job_id not in jobs]
    if missing:
        raise CheckFailed(f"scheduler is missing jobs: {', '.join(missing)}")
    for job_id in REQUIRED_JOBS:
        next_run = jobs[job_id]
        if next_run is None:
            raise CheckFailed(f"job {job_id} is paused")
        # A next run far in the past means the ticker thread is stuck.
        lag = (now - datetime.fromisoformat(next_run)).total_seconds()
        if lag > 300:
            raise CheckFailed(f"job {job_id} is {int(lag)}s behind schedule")


def with_retries(label: str, check, *, retries: int, retry_delay: float):
    last_error = None
    for attempt in range(retries + 1):
        try:
            result = check()
            print(f"OK: {label}")
            return result
        except CheckFailed as exc:
            last_error = str(exc)
        if attempt < retries:
            wait = retry_delay * (attempt + 1)
            print(f"WARN: {last_error} (retry {attempt + 1}/{retries} in {wait:.1f}s)")
            time.sleep(wait)
    fail(last_error or f"{label} failed")


def main() -> None:
    base_url = normalize_base_url(os.getenv("PANEL_BASE_URL", ""))
    if not base_url:
        fail("Missing PANEL_BASE_URL environment variable.")

    timeout = float(os.getenv("HEALTHCHECK_TIMEOUT_SECONDS", "10"))
    retries = int(os.getenv("HEALTHCHECK_RETRIES", "3"))
    retry_delay = float(os.getenv("HEALTHCHECK_RETRY_DELAY_SECONDS", "2"))
    require_scheduler = env_flag("HEALTHCHECK_REQUIRE_SCHEDULER")

    print(f"Healthcheck: base_url={base_url} timeout={timeout}s retries={retries} scheduler={require_scheduler}")

    headers = {"User-Agent": "panel-billing-healthcheck/1.0"}
    with httpx.Client(base_url=base_url, timeout=timeout, headers=headers) as client:
        with_retries("/readyz", lambda: fetch(client, "/readyz", "ready"), retries=retries, retry_delay=retry_delay)

        def liveness():
            data = fetch(client, "/healthz", "ok")
            if require_scheduler:
                check_jobs(data, datetime.now(timezone.utc))
            return data

        with_retries("/healthz", liveness, retries=retries, retry_delay=retry_delay)

    print("SUCCESS: all health checks passed.")


if __name__ == "__main__":
    main()
