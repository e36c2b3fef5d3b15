"""Tests for the taskrelay CLI commands."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from taskrelay import __version__
from taskrelay.cli.main import _parse_fields, app
from taskrelay.config.settings import get_settings
from taskrelay.core.gateway import Submission
from taskrelay.tasks.errors import BrokerUnavailable
from taskrelay.tasks.models import BroadcastEvent, Envelope, StatusRecord, TaskStatus
from taskrelay.tasks.store import StatusStore
from tests.fakes import FakeBroker, FakePubSub, FakeRedis

runner = CliRunner()


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestParseFields:
    def test_key_value_pairs(self):
        assert _parse_fields(["text=hello", "subject=a=b"]) == {"text": "hello", "subject": "a=b"}

    def test_empty_value_allowed(self):
        assert _parse_fields(["body="]) == {"body": ""}


class TestSubmit:
    def test_interactive_result_is_printed(self):
        submission = Submission(
            task_id="t1", type="reverse_text_task", status=TaskStatus.COMPLETED, result="olleh"
        )
        with patch("taskrelay.cli.main._submit", AsyncMock(return_value=submission)) as mock:
            result = runner.invoke(app, ["submit", "reverse_text_task", "-f", "text=hello"])

        assert result.exit_code == 0
        assert "ID=t1" in result.output
        assert "olleh" in result.output
        mock.assert_called_once_with("reverse_text_task", {"text": "hello"}, None)

    def test_background_task_prints_only_id(self):
        submission = Submission(task_id="t2", type="send_email_task")
        with patch("taskrelay.cli.main._submit", AsyncMock(return_value=submission)):
            result = runner.invoke(
                app, ["submit", "send_email_task", "-f", "recipient=a@b.c", "--no-wait"]
            )

        assert result.exit_code == 0
        assert "ID=t2" in result.output
        assert "still" not in result.output

    def test_interactive_timeout_says_still_pending(self):
        submission = Submission(task_id="t3", type="reverse_text_task")
        with patch("taskrelay.cli.main._submit", AsyncMock(return_value=submission)):
            result = runner.invoke(app, ["submit", "reverse_text_task", "-f", "text=x"])

        assert result.exit_code == 0
        assert "still pending" in result.output

    def test_invalid_field_exits_2(self):
        with patch("taskrelay.cli.main._submit", AsyncMock()) as mock:
            result = runner.invoke(app, ["submit", "reverse_text_task", "-f", "nonsense"])
        assert result.exit_code == 2
        mock.assert_not_called()

    def test_infrastructure_error_exits_1(self):
        error = BrokerUnavailable("amqp://rabbit//", 10)
        with patch("taskrelay.cli.main._submit", AsyncMock(side_effect=error)):
            result = runner.invoke(app, ["submit", "reverse_text_task", "-f", "text=x"])
        assert result.exit_code == 1
        assert "Could not connect to broker" in result.output


class TestStatus:
    def test_prints_record(self):
        record = StatusRecord(
            type="send_email_task",
            status=TaskStatus.FAILED,
            payload={"recipient": "fail@x.com"},
            result="Simulated email failure",
            worker_id="host:1:0",
        )
        with patch("taskrelay.cli.main._get_record", AsyncMock(return_value=record)):
            result = runner.invoke(app, ["status", "t1"])

        assert result.exit_code == 0
        assert "failed" in result.output
        assert "Simulated email failure" in result.output
        assert "host:1:0" in result.output

    def test_missing_record_exits_1(self):
        with patch("taskrelay.cli.main._get_record", AsyncMock(return_value=None)):
            result = runner.invoke(app, ["status", "nope"])
        assert result.exit_code == 1
        assert "No record" in result.output


class ReplayPubSub(FakePubSub):
    """Delivers a fixed backlog right after subscribing, then ends the stream."""

    def __init__(self, server: FakeRedis, backlog: list[str]) -> None:
        super().__init__(server)
        self._backlog = backlog

    async def subscribe(self, *channels: str) -> None:
        await super().subscribe(*channels)
        for raw in self._backlog:
            self.deliver({"type": "message", "channel": channels[0], "data": raw})
        self.deliver(None)


class ReplayRedis(FakeRedis):
    def __init__(self, backlog: list[str]) -> None:
        super().__init__()
        self.backlog = backlog

    def pubsub(self) -> ReplayPubSub:
        return ReplayPubSub(self, self.backlog)


class TestServiceWiring:
    """Commands run end to end against in-memory Redis and queue."""

    def test_submit_records_enqueues_and_closes(self):
        redis = FakeRedis()
        broker = FakeBroker()
        with (
            patch("taskrelay.cli.main._store_from_settings", return_value=StatusStore(redis)),
            patch("taskrelay.broker.kombu_broker.KombuBroker", return_value=broker),
        ):
            result = runner.invoke(
                app, ["submit", "send_email_task", "-f", "recipient=a@b.c", "-f", "subject=hi"]
            )

        assert result.exit_code == 0, result.output
        [(body, headers)] = broker.queue
        envelope = Envelope.decode(body)
        assert envelope.payload == {"recipient": "a@b.c", "subject": "hi", "body": None}
        assert f"ID={envelope.id}" in result.output
        assert redis.hashes[f"task:{envelope.id}"]["status"] == "pending"
        assert broker.closed
        assert redis.closed

    def test_unknown_type_fails_before_connecting(self):
        store_factory = MagicMock()
        broker_cls = MagicMock()
        with (
            patch("taskrelay.cli.main._store_from_settings", store_factory),
            patch("taskrelay.broker.kombu_broker.KombuBroker", broker_cls),
        ):
            result = runner.invoke(app, ["submit", "teleport", "-f", "x=1"])

        assert result.exit_code == 1
        assert "Unknown task type: teleport" in result.output
        store_factory.assert_not_called()
        broker_cls.assert_not_called()

    def test_status_reads_stored_record(self):
        redis = FakeRedis()
        redis.hashes["task:t1"] = {
            "type": "reverse_text_task",
            "status": "completed",
            "payload": '{"text": "abc"}',
            "result": '"cba"',
            "timestamp": "1",
            "workerId": "host:1:0",
        }
        with patch("taskrelay.cli.main._store_from_settings", return_value=StatusStore(redis)):
            result = runner.invoke(app, ["status", "t1"])

        assert result.exit_code == 0
        assert "completed" in result.output
        assert "cba" in result.output
        assert redis.closed

    def test_watch_prints_events(self):
        events = [
            BroadcastEvent(id="t1", type="reverse_text_task", status=TaskStatus.STARTED, worker_id="host:1:0"),
            BroadcastEvent(
                id="t1", type="reverse_text_task", status=TaskStatus.COMPLETED, worker_id="host:1:0", result="cba"
            ),
        ]
        redis = ReplayRedis([e.to_json() for e in events])
        with patch("taskrelay.cli.main._store_from_settings", return_value=StatusStore(redis)):
            result = runner.invoke(app, ["watch"])

        assert result.exit_code == 0
        assert "started" in result.output
        assert "completed" in result.output
        assert "cba" in result.output
        assert redis.closed
