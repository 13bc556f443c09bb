import json

import pytest
from pydantic import ValidationError

from runnersync.config import BackoffPolicy, SyncConfig, outer_retry_delay


def test_defaults_match_dashboard_settings():
    config = SyncConfig()

    assert config.reconnect_schedule.delays == (0.0, 2.0, 10.0, 30.0)
    assert config.max_outer_retries == 5
    assert config.outer_retry_base_delay == 2.0
    assert config.debounce_delay == 0.5
    assert config.polling_interval == 30.0
    assert config.token_refresh_lead_time == 300.0
    assert config.session_ttl == 3600.0
    assert config.privileged_role == "admin"


def test_camel_case_aliases_are_accepted():
    config = SyncConfig.from_mapping(
        {
            "apiBaseUrl": "https://example.test/api/",
            "hubUrl": "https://example.test/adminHub",
            "reconnectSchedule": [0, 1.5],
            "maxOuterRetries": 3,
            "outerRetryBaseDelay": 1,
            "debounceDelay": 0.25,
            "pollingInterval": 5,
            "tokenRefreshLeadTime": 60,
            "unrelated": "ignored",
        }
    )

    assert config.api_base_url == "https://example.test/api"
    assert config.reconnect_schedule.delays == (0.0, 1.5)
    assert config.max_outer_retries == 3
    assert config.outer_retry_base_delay == 1.0
    assert config.debounce_delay == 0.25
    assert config.polling_interval == 5.0
    assert config.token_refresh_lead_time == 60.0


def test_dashboard_config_json_key_is_accepted(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"API_BASE_URL": "https://other.test/api"}), encoding="utf-8")

    config = SyncConfig.from_file(path)

    assert config.api_base_url == "https://other.test/api"
    assert config.auth_url("verify") == "https://other.test/api/Auth/verify"


def test_from_file_rejects_non_object(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ValueError):
        SyncConfig.from_file(path)


def test_data_version_url_resolves_against_origin():
    config = SyncConfig(api_base_url="https://api.test/api")
    assert config.resolved_data_version_url == "https://api.test/api/data-version"

    explicit = SyncConfig(data_version_url="https://cdn.test/version")
    assert explicit.resolved_data_version_url == "https://cdn.test/version"


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        SyncConfig(max_outer_retries=0)
    with pytest.raises(ValidationError):
        SyncConfig(polling_interval=0)


def test_backoff_policy_walks_schedule_then_stops():
    policy = BackoffPolicy()

    assert [policy.delay_for(i) for i in range(4)] == [0.0, 2.0, 10.0, 30.0]
    assert policy.delay_for(4) is None
    assert policy.delay_for(-1) is None
    assert policy.max_attempts == 4


def test_backoff_policy_from_millis():
    assert BackoffPolicy.from_millis([0, 2000, 10000, 30000]) == BackoffPolicy()


def test_backoff_policy_rejects_negative_delay():
    with pytest.raises(ValueError):
        BackoffPolicy((1.0, -1.0))


def test_outer_retry_delay_scales_with_retry_count():
    assert outer_retry_delay(1, 2.0) == 2.0
    assert outer_retry_delay(4, 2.0) == 8.0
    assert outer_retry_delay(0, 2.0) == 0.0
