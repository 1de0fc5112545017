"""Shared fixtures for the queueops tests."""

from __future__ import annotations

from typing import List

import pytest


@pytest.fixture(autouse=True)
def aws_test_environment(request: pytest.FixtureRequest, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep boto3 away from real credentials and profiles (except live tests)."""
    if request.node.get_closest_marker("live"):
        return
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture
def no_sleep() -> List[float]:
    """Collects requested backoff delays instead of sleeping."""
    return []
