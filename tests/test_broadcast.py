from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Set

import anyio
import pytest

from portal.broadcast import BroadcastOrchestrator, BroadcastSettings, chunked, collect_recipients
from portal.database import Database
from portal.errors import BroadcastFailedError, UpstreamError, ValidationError
from portal.mailer import MailerError, OutboundEmail
from portal.models import DomainRecord
from portal.tokens import verify_unsubscribe_token

CONTENT = "## Q3 results\n\nRevenue grew **40%** quarter over quarter."


class RecordingMailer:
    def __init__(self, failing: Optional[Set[str]] = None) -> None:
        self.failing = failing or set()
        self.sent: List[OutboundEmail] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, message: OutboundEmail) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await anyio.sleep(0)
            if message.to in self.failing:
                raise MailerError(f"rejected {message.to}")
            self.sent.append(message)
        finally:
            self.in_flight -= 1


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "portal.sqlite3")
    db.initialize()
    return db


def _settings(**overrides) -> BroadcastSettings:
    values = dict(
        site_url="https://investors.example.com",
        api_url="https://api.example.com",
        unsubscribe_secret="unsubscribe-secret",
    )
    values.update(overrides)
    return BroadcastSettings(**values)


def _list(database: Database, domain: str, *emails: str) -> None:
    database.mutate_domain(domain, lambda current: DomainRecord(domain=domain, emails=tuple(emails)))


def test_chunked_splits_into_fixed_batches() -> None:
    assert chunked(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
    assert chunked([], 50) == []
    with pytest.raises(ValueError):
        chunked([1], 0)


def test_collect_recipients_dedupes_and_honours_opt_out() -> None:
    recipients = collect_recipients(
        [["a@acme.com", "B@acme.com"], ["a@acme.com", "c@gmail.com", "bogus"]],
        {"b@acme.com": False, "c@gmail.com": True},
    )
    assert recipients == ["a@acme.com", "c@gmail.com"]


def test_broadcast_delivers_to_every_subscribed_recipient(database: Database) -> None:
    _list(database, "acme.com", "a@acme.com", "b@acme.com")
    _list(database, "gmail.com", "c@gmail.com")
    database.record_login("uid-b", "b@acme.com", approved=True)
    database.update_user_flags("b@acme.com", subscribed=False)
    mailer = RecordingMailer()
    orchestrator = BroadcastOrchestrator(database, mailer, _settings())

    report = anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)

    assert report.recipients == 2
    assert report.sent == 2
    assert report.failed == 0
    assert not report.partial
    assert sorted(message.to for message in mailer.sent) == ["a@acme.com", "c@gmail.com"]

    message = next(message for message in mailer.sent if message.to == "a@acme.com")
    assert message.subject == "Investor Update: Q3 Update"
    assert message.idempotency_key == f"update-{report.update_id}-a@acme.com"
    assert "**" not in message.text
    token = message.text.split("token=", 1)[1].split()[0]
    assert verify_unsubscribe_token(token, "unsubscribe-secret") == "a@acme.com"

    stored = database.get_update(report.update_id)
    assert stored.email_sent is True
    assert stored.sent_count == 2
    assert stored.failed_count == 0


def test_partial_failure_keeps_update_and_reports_failures(database: Database) -> None:
    _list(database, "acme.com", "a@acme.com", "b@acme.com", "c@acme.com")
    mailer = RecordingMailer(failing={"b@acme.com"})
    orchestrator = BroadcastOrchestrator(database, mailer, _settings())

    report = anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)

    assert (report.sent, report.failed) == (2, 1)
    assert report.partial
    assert [failure.email for failure in report.failed_recipients] == ["b@acme.com"]
    stored = database.get_update(report.update_id)
    assert stored is not None
    assert stored.email_sent is False
    assert (stored.sent_count, stored.failed_count) == (2, 1)


def test_total_failure_rolls_back_the_update(database: Database) -> None:
    _list(database, "acme.com", "a@acme.com", "b@acme.com")
    mailer = RecordingMailer(failing={"a@acme.com", "b@acme.com"})
    orchestrator = BroadcastOrchestrator(database, mailer, _settings())

    with pytest.raises(BroadcastFailedError) as excinfo:
        anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)

    assert excinfo.value.failed == 2
    assert excinfo.value.sent == 0
    assert excinfo.value.status_code == 500
    assert excinfo.value.error_type == "Network"
    assert database.list_updates() == []


def test_zero_recipients_publishes_without_sending(database: Database) -> None:
    mailer = RecordingMailer()
    orchestrator = BroadcastOrchestrator(database, mailer, _settings())

    report = anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)

    assert (report.recipients, report.sent, report.failed) == (0, 0, 0)
    assert mailer.sent == []
    assert database.get_update(report.update_id).email_sent is True


def test_missing_mailer_rolls_back_when_recipients_exist(database: Database) -> None:
    _list(database, "acme.com", "a@acme.com")
    orchestrator = BroadcastOrchestrator(database, None, _settings())

    with pytest.raises(UpstreamError, match="Email configuration missing."):
        anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)
    assert database.list_updates() == []


def test_invalid_input_is_rejected_before_persisting(database: Database) -> None:
    orchestrator = BroadcastOrchestrator(database, RecordingMailer(), _settings())

    with pytest.raises(ValidationError):
        anyio.run(orchestrator.send_update, "  ", CONTENT)
    with pytest.raises(ValidationError):
        anyio.run(orchestrator.send_update, "Title", "too short")
    assert database.list_updates() == []


def test_batches_bound_concurrent_sends(database: Database) -> None:
    emails = [f"user{index}@acme.com" for index in range(7)]
    _list(database, "acme.com", *emails)
    mailer = RecordingMailer()
    orchestrator = BroadcastOrchestrator(database, mailer, _settings(batch_size=3))

    report = anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)

    assert report.sent == 7
    assert 1 < mailer.max_in_flight <= 3


def test_slow_send_counts_as_failure(database: Database) -> None:
    _list(database, "acme.com", "a@acme.com", "slow@acme.com")

    class SlowMailer(RecordingMailer):
        async def send(self, message: OutboundEmail) -> None:
            if message.to == "slow@acme.com":
                await anyio.sleep(5)
            await super().send(message)

    orchestrator = BroadcastOrchestrator(database, SlowMailer(), _settings(send_timeout=0.05))

    report = anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)

    assert (report.sent, report.failed) == (1, 1)
    assert report.failed_recipients[0].email == "slow@acme.com"


def test_unsubscribe_link_omitted_without_secret(database: Database) -> None:
    _list(database, "acme.com", "a@acme.com")
    mailer = RecordingMailer()
    orchestrator = BroadcastOrchestrator(database, mailer, _settings(unsubscribe_secret=None))

    anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)

    assert "unsubscribe" not in mailer.sent[0].text.lower()


def test_unexpected_send_error_only_fails_that_recipient(database: Database) -> None:
    _list(database, "acme.com", "a@acme.com", "b@acme.com", "c@acme.com")

    class FlakyMailer(RecordingMailer):
        async def send(self, message: OutboundEmail) -> None:
            if message.to == "b@acme.com":
                raise ConnectionResetError("connection reset by peer")
            await super().send(message)

    mailer = FlakyMailer()
    orchestrator = BroadcastOrchestrator(database, mailer, _settings())

    report = anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)

    assert (report.sent, report.failed) == (2, 1)
    assert sorted(message.to for message in mailer.sent) == ["a@acme.com", "c@acme.com"]
    assert report.failed_recipients[0].email == "b@acme.com"
    assert report.failed_recipients[0].error.startswith("ConnectionResetError")
    stored = database.get_update(report.update_id)
    assert (stored.sent_count, stored.failed_count) == (2, 1)
    assert stored.email_sent is False


def test_aborted_batch_rolls_back_the_update(database: Database) -> None:
    _list(database, "acme.com", "a@acme.com")

    class BrokenOrchestrator(BroadcastOrchestrator):
        async def _deliver(self, mailer, update, recipient, report) -> None:
            raise RuntimeError("template failure")

    orchestrator = BrokenOrchestrator(database, RecordingMailer(), _settings())

    with pytest.raises(UpstreamError, match="Failed to send update."):
        anyio.run(orchestrator.send_update, "Q3 Update", CONTENT)
    assert database.list_updates() == []
