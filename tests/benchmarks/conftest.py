"""Shared fixtures for the benchmarks.

The cache and retry code under test is async, but pytest-benchmark times
plain callables, so each benchmark drives its coroutine through
``run_async`` on one session-wide loop rather than paying for
``asyncio.run`` (loop creation and teardown) on every round.
"""

from __future__ import annotations

import asyncio

import pytest


@pytest.fixture(scope="session")
def bench_loop():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture(scope="session")
def run_async(bench_loop):
    """``run_async(coro)`` runs *coro* to completion on the shared loop."""
    return bench_loop.run_until_complete
