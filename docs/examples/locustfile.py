"""Locust load-test: database-trigger traffic against the invalidation endpoints.

Simulates what a busy database sends when triggers fire on every row
change: bursts of multi-tag invalidations, repeated deliveries of the same
tags (at-least-once delivery), and the occasional single-tag revalidation.

Run with::

    pip install locust
    CACHESYNC_CACHE_INVALIDATION_SECRET=... CACHESYNC_REVALIDATION_SECRET=... \\
        locust -f docs/examples/locustfile.py --host=http://localhost:8000

Headless, for a fixed run::

    locust -f docs/examples/locustfile.py \\
        --host=http://localhost:8000 \\
        --users=50 --spawn-rate=10 \\
        --run-time=60s --headless

Endpoints exercised
-------------------
POST /api/cache/invalidate   ``{"tags": [...]}`` (x-cache-invalidation-secret)
POST /api/revalidate         ``{"tag": "..."}``  (x-revalidation-secret)

Metrics to watch
----------------
- p50, p95, p99 latency per endpoint
- Requests/second at target concurrency
- Any non-200 answer is a failure: 401 means the secrets do not match the
  server, 500 that the server has no secret configured
"""

from __future__ import annotations

import os
import random

try:
    from locust import HttpUser, between, task
except ImportError as exc:
    raise SystemExit(
        "locust is not installed.  Install it with:  pip install locust"
    ) from exc


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

INVALIDATE_WEIGHT = 8
DUPLICATE_WEIGHT = 2
REVALIDATE_WEIGHT = 1

INVALIDATION_SECRET = os.environ.get("CACHESYNC_CACHE_INVALIDATION_SECRET", "")
REVALIDATION_SECRET = os.environ.get("CACHESYNC_REVALIDATION_SECRET", "")

# Tag shapes a course platform would emit from its triggers
_COURSES = range(1, 51)
_USERS = range(1, 2001)


def _course_tag() -> str:
    course = random.choice(_COURSES)
    return random.choice([f"course:{course}", f"course:{course}:staff", f"course:{course}:grades"])


def _user_tag() -> str:
    return f"user:{random.choice(_USERS)}"


# ---------------------------------------------------------------------------
# User behaviour
# ---------------------------------------------------------------------------


class TriggerUser(HttpUser):
    """One database connection firing change triggers.

    Waits between 10 ms and 100 ms between requests: triggers come in
    bursts, much faster than human traffic.
    """

    wait_time = between(0.01, 0.1)

    def on_start(self) -> None:
        """Probe the endpoint before the test starts; abort if it rejects us."""
        resp = self._invalidate(["probe"], name="/api/cache/invalidate [probe]")
        if resp.status_code != 200:
            self.environment.runner.quit()
        self._last_tags: list[str] = ["probe"]

    def _invalidate(self, tags: list[str], name: str):
        return self.client.post(
            "/api/cache/invalidate",
            json={"tags": tags},
            headers={"x-cache-invalidation-secret": INVALIDATION_SECRET},
            name=name,
        )

    @task(INVALIDATE_WEIGHT)
    def invalidate_row_change(self) -> None:
        """A row change touching one course and a few users."""
        tags = [_course_tag()] + [_user_tag() for _ in range(random.randint(0, 3))]
        self._last_tags = tags
        with self.client.post(
            "/api/cache/invalidate",
            json={"tags": tags},
            headers={"x-cache-invalidation-secret": INVALIDATION_SECRET},
            name="/api/cache/invalidate",
            catch_response=True,
        ) as resp:
            if resp.status_code != 200:
                resp.failure(f"Unexpected status: {resp.status_code}")

    @task(DUPLICATE_WEIGHT)
    def redeliver(self) -> None:
        """Repeat the previous request; the server must still answer 200."""
        with self.client.post(
            "/api/cache/invalidate",
            json={"tags": self._last_tags},
            headers={"x-cache-invalidation-secret": INVALIDATION_SECRET},
            name="/api/cache/invalidate [duplicate]",
            catch_response=True,
        ) as resp:
            if resp.status_code != 200 or not resp.json().get("success"):
                resp.failure(f"Duplicate delivery not acknowledged: {resp.status_code}")

    @task(REVALIDATE_WEIGHT)
    def revalidate_tag(self) -> None:
        """A debounced worker revalidating one tag."""
        with self.client.post(
            "/api/revalidate",
            json={"tag": _course_tag()},
            headers={"x-revalidation-secret": REVALIDATION_SECRET},
            name="/api/revalidate",
            catch_response=True,
        ) as resp:
            if resp.status_code != 200:
                resp.failure(f"Unexpected status: {resp.status_code}")
