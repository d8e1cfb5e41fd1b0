from __future__ import annotations

import pytest
from pydantic import ValidationError

from convoflow.settings import Settings, worst_case_execution_seconds


def test_worst_case_execution_counts_every_attempt_and_backoff() -> None:
    assert worst_case_execution_seconds(
        15.0, max_attempts=3, retry_base_seconds=1.0, retry_max_seconds=30.0
    ) == 48.0
    assert worst_case_execution_seconds(
        10.0, max_attempts=5, retry_base_seconds=4.0, retry_max_seconds=10.0
    ) == 50.0 + 4.0 + 8.0 + 10.0 + 10.0
    assert worst_case_execution_seconds(
        10.0, max_attempts=2, retry_base_seconds=0.0, retry_max_seconds=10.0
    ) == 20.0


def test_defaults_pass_lease_checks() -> None:
    cfg = Settings(_env_file=None)

    assert cfg.action_inflight_lease_seconds >= 48
    assert cfg.action_queue_visibility_timeout_seconds > cfg.action_inflight_lease_seconds


def test_lease_shorter_than_worst_case_execution_is_rejected() -> None:
    with pytest.raises(ValidationError, match="ACTION_INFLIGHT_LEASE_SECONDS"):
        Settings(
            _env_file=None,
            ACTION_INFLIGHT_LEASE_SECONDS=60,
            ACTION_DEFAULT_TIMEOUT_SECONDS=30,
            ACTION_MAX_ATTEMPTS=3,
        )


def test_visibility_timeout_must_outlast_lease() -> None:
    with pytest.raises(ValidationError, match="ACTION_QUEUE_VISIBILITY_TIMEOUT_SECONDS"):
        Settings(
            _env_file=None,
            ACTION_INFLIGHT_LEASE_SECONDS=600,
            ACTION_QUEUE_VISIBILITY_TIMEOUT_SECONDS=600,
        )
