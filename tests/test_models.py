import pytest

from jobrelay.config import RetryPolicy, Settings, validate_config_value
from jobrelay.models import (
    Job, IllegalTransition, can_transition, QUEUED, ACTIVE, COMPLETED, FAILED,
)
from jobrelay.utils import is_mock_id, mock_job_id, new_job_id


@pytest.mark.parametrize("terminal", [COMPLETED, FAILED])
@pytest.mark.parametrize("target", [QUEUED, ACTIVE, COMPLETED, FAILED])
def test_terminal_states_have_no_exits(terminal, target):
    assert not can_transition(terminal, target)


def test_transition_raises_on_illegal_move():
    job = Job(id="job-1", state=COMPLETED)
    with pytest.raises(IllegalTransition):
        job.transition(QUEUED)
    assert job.state == COMPLETED


def test_forward_path_and_redelivery():
    job = Job(id="job-1")
    job.transition(ACTIVE)
    job.transition(QUEUED)
    job.transition(ACTIVE)
    job.transition(FAILED)
    assert job.is_terminal


def test_status_shape_only_exposes_result_or_error():
    done = Job(id="a", state=COMPLETED, result={"text": "hi"}, error="stale")
    failed = Job(id="b", state=FAILED, error="boom")
    queued = Job(id="c")

    assert done.to_status()["result"] == {"text": "hi"}
    assert "error" not in done.to_status()
    assert failed.to_status()["error"] == "boom"
    assert "result" not in failed.to_status()
    assert set(queued.to_status()) == {"jobId", "state", "attempts", "timestamps"}


def test_job_dict_roundtrip_keeps_meta():
    job = Job(id="x", payload={"prompt": "p"}, meta={"requester": "u1"}, priority=4, max_attempts=3)
    assert Job.from_dict(job.to_dict()) == job


def test_from_dict_rejects_unknown_state():
    with pytest.raises(ValueError):
        Job.from_dict({"id": "x", "state": "running"})


def test_mock_ids_are_prefixed_and_unique():
    a, b = mock_job_id(), mock_job_id()
    assert a != b
    assert is_mock_id(a) and is_mock_id(b)
    assert not is_mock_id(new_job_id())
    assert not is_mock_id("")


def test_retry_policy_doubles():
    policy = RetryPolicy(max_attempts=4, base_delay=1.0, multiplier=2)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_retry_policy_from_config():
    policy = RetryPolicy.from_config({"max_attempts": "5", "backoff_delay": "0.5", "backoff_multiplier": "3"})
    assert policy == RetryPolicy(5, 0.5, 3.0)


def test_retry_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


@pytest.mark.parametrize("key,value", [
    ("nope", "1"),
    ("max_attempts", "abc"),
    ("max_attempts", "0"),
    ("concurrency", "2.5"),
    ("backoff_delay", "-1"),
])
def test_validate_config_value_rejects(key, value):
    with pytest.raises(ValueError):
        validate_config_value(key, value)


def test_settings_from_env():
    s = Settings.from_env({
        "JOBRELAY_DB": "/tmp/q.db",
        "SIDECAR_URL": "http://side:4800/",
        "JOBRELAY_TIMEOUT": "5",
    })
    assert s.db_path == "/tmp/q.db"
    assert s.backend == "auto"
    assert s.sidecar_url == "http://side:4800"
    assert s.timeout == 5.0


def test_settings_rejects_unknown_backend():
    with pytest.raises(ValueError):
        Settings.from_env({"JOBRELAY_BACKEND": "kafka"})
