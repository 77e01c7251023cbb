#!/usr/bin/env python3
"""Liveness/readiness checks against a deployed custody service."""

from __future__ import annotations

import os
import time

import httpx


def fail(message: str) -> None:
    print(f"ERROR: {message}")
    raise SystemExit(1)


def normalize_base_url(base_url: str) -> str:
    url = (base_url or "").strip().rstrip("/")
    # Accept accidental values like ".../api/v1" in secrets.
    for suffix in ("/api/v1", "/api"):
        if url.endswith(suffix):
            return url[: -len(suffix)]
    return url


def check_endpoint(client: httpx.Client, path: str, expected_status: str, *, retries: int, retry_delay: float) -> dict:
    last_error = None
    for attempt in range(retries + 1):
        try:
            response = client.get(path)
            if response.status_code != 200:
                raise RuntimeError(f"{path} returned HTTP {response.status_code}: {response.text[:200]}")
            data = response.json()
            if not isinstance(data, dict) or data.get("status") != expected_status:
                raise RuntimeError(f"{path} status mismatch: expected '{expected_status}', got {data!r}")
            print(f"OK: {path} -> status={data['status']}")
            return data
        except (httpx.HTTPError, ValueError, RuntimeError) as exc:
            last_error = str(exc)

        if attempt < retries:
            wait = retry_delay * (attempt + 1)
            print(f"WARN: {last_error} (retry {attempt + 1}/{retries} in {wait:.1f}s)")
            time.sleep(wait)

    fail(last_error or f"{path} failed")
    return {}


def main() -> None:
    base_url = normalize_base_url(os.getenv("CUSTODY_BASE_URL", ""))
    if not base_url:
        fail("Missing CUSTODY_BASE_URL environment variable.")

    timeout = float(os.getenv("HEALTHCHECK_TIMEOUT_SECONDS", "10"))
    retries = int(os.getenv("HEALTHCHECK_RETRIES", "3"))
    retry_delay = float(os.getenv("HEALTHCHECK_RETRY_DELAY_SECONDS", "3"))
    print(f"Healthcheck config: base_url={base_url} timeout={timeout}s retries={retries}")

    with httpx.Client(base_url=base_url, timeout=timeout, headers={"User-Agent": "custody-healthcheck/1.0"}) as client:
        health = check_endpoint(client, "/healthz", "ok", retries=retries, retry_delay=retry_delay)
        check_endpoint(client, "/readyz", "ready", retries=retries, retry_delay=retry_delay)

    if not health.get("scheduler_running"):
        print("WARN: reconciliation scheduler is not running on this instance.")
    print("SUCCESS: all health checks passed.")


if __name__ == "__main__":
    main()
