from __future__ import annotations

from pathlib import Path
from typing import List

import anyio
import pytest

from portal.allowlist import AllowlistSynchronizer
from portal.database import Database
from portal.errors import ConflictError, NotFoundError, ValidationError
from portal.models import DomainRecord
from portal.policy import ApprovalPolicy
from portal.tasks import BackgroundDispatcher


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "portal.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def allowlist(database: Database) -> AllowlistSynchronizer:
    return AllowlistSynchronizer(database, ApprovalPolicy(database))


def test_add_email_creates_domain_and_flags_profile(database: Database, allowlist: AllowlistSynchronizer) -> None:
    database.record_login("uid-1", "bob@gmail.com", approved=False)
    database.update_user_flags("bob@gmail.com", subscribed=False)

    record = anyio.run(allowlist.add_email, " Bob@Gmail.com ")

    assert record == DomainRecord(domain="gmail.com", emails=("bob@gmail.com",))
    profile = database.get_user("uid-1")
    assert profile.approved is True
    assert profile.subscribed is True


def test_add_email_rejects_duplicates_without_writing(database: Database, allowlist: AllowlistSynchronizer) -> None:
    anyio.run(allowlist.add_email, "bob@gmail.com")
    with pytest.raises(ConflictError, match="Email already exists."):
        anyio.run(allowlist.add_email, "BOB@gmail.com")
    assert database.get_domain("gmail.com").emails == ("bob@gmail.com",)


def test_add_email_validates_format(allowlist: AllowlistSynchronizer) -> None:
    with pytest.raises(ValidationError):
        anyio.run(allowlist.add_email, "not-an-email")
    with pytest.raises(ValidationError):
        anyio.run(allowlist.add_email, "@acme.com")


def test_remove_last_email_deletes_domain(database: Database, allowlist: AllowlistSynchronizer) -> None:
    anyio.run(allowlist.add_email, "a@acme.com")
    anyio.run(allowlist.add_email, "b@acme.com")
    database.record_login("uid-a", "a@acme.com", approved=True)
    database.record_login("uid-b", "b@acme.com", approved=True)
    database.update_user_flags("a@acme.com", subscribed=False)

    assert anyio.run(allowlist.remove_email, "a@acme.com") is False
    assert database.get_domain("acme.com").emails == ("b@acme.com",)
    removed = database.get_user("uid-a")
    assert removed.approved is False
    assert removed.subscribed is False

    assert anyio.run(allowlist.remove_email, "b@acme.com") is True
    assert database.get_domain("acme.com") is None
    still_subscribed = database.get_user("uid-b")
    assert still_subscribed.approved is False
    assert still_subscribed.subscribed is True


def test_remove_unknown_email_leaves_record_untouched(database: Database, allowlist: AllowlistSynchronizer) -> None:
    with pytest.raises(NotFoundError, match="Domain not found."):
        anyio.run(allowlist.remove_email, "ghost@nowhere.io")

    anyio.run(allowlist.add_email, "a@acme.com")
    with pytest.raises(NotFoundError, match="Email not found."):
        anyio.run(allowlist.remove_email, "typo@acme.com")
    assert database.get_domain("acme.com").emails == ("a@acme.com",)


def test_domain_add_and_remove(database: Database, allowlist: AllowlistSynchronizer) -> None:
    record = anyio.run(allowlist.add_domain, "Acme.com")
    assert record == DomainRecord(domain="acme.com")

    with pytest.raises(ConflictError, match="Domain already exists."):
        anyio.run(allowlist.add_domain, "acme.com")
    with pytest.raises(ValidationError):
        anyio.run(allowlist.add_domain, "localhost")

    anyio.run(allowlist.remove_domain, "acme.com")
    assert database.get_domain("acme.com") is None
    with pytest.raises(NotFoundError):
        anyio.run(allowlist.remove_domain, "acme.com")


def test_sync_on_login_lists_approved_company_address(database: Database, allowlist: AllowlistSynchronizer) -> None:
    anyio.run(allowlist.add_domain, "acme.com")

    profile = anyio.run(allowlist.sync_on_login, "uid-9", "New.Hire@Acme.com")

    assert profile.approved is True
    assert profile.subscribed is True
    assert database.get_domain("acme.com").emails == ("new.hire@acme.com",)

    anyio.run(allowlist.sync_on_login, "uid-9", "new.hire@acme.com")
    assert database.get_domain("acme.com").emails == ("new.hire@acme.com",)


def test_sync_on_login_for_unlisted_user(database: Database, allowlist: AllowlistSynchronizer) -> None:
    profile = anyio.run(allowlist.sync_on_login, "uid-x", "eve@gmail.com")

    assert profile.approved is False
    assert database.get_domain("gmail.com") is None


def test_sync_on_login_preserves_unsubscribe(database: Database, allowlist: AllowlistSynchronizer) -> None:
    anyio.run(allowlist.add_email, "bob@gmail.com")
    anyio.run(allowlist.sync_on_login, "uid-b", "bob@gmail.com")
    database.update_user_flags("bob@gmail.com", subscribed=False)

    profile = anyio.run(allowlist.sync_on_login, "uid-b", "bob@gmail.com")
    assert profile.subscribed is False


def test_list_allowlist_joins_profiles(database: Database, allowlist: AllowlistSynchronizer) -> None:
    anyio.run(allowlist.add_email, "a@acme.com")
    anyio.run(allowlist.add_email, "b@acme.com")
    anyio.run(allowlist.sync_on_login, "uid-a", "a@acme.com")
    database.update_user_flags("a@acme.com", subscribed=False)

    entries = anyio.run(allowlist.list_allowlist)

    assert [entry.domain for entry in entries] == ["acme.com"]
    by_email = {item.email: item for item in entries[0].emails}
    assert by_email["a@acme.com"].subscribed is False
    assert by_email["a@acme.com"].last_login is not None
    assert by_email["b@acme.com"].subscribed is True
    assert by_email["b@acme.com"].last_login is None


def test_add_email_dispatches_welcome_notification(database: Database) -> None:
    welcomed: List[str] = []

    async def notify(email: str) -> None:
        welcomed.append(email)

    async def scenario() -> None:
        dispatcher = BackgroundDispatcher()
        allowlist = AllowlistSynchronizer(
            database,
            ApprovalPolicy(database),
            dispatcher=dispatcher,
            welcome_notifier=notify,
        )
        await allowlist.add_email("carol@acme.com")
        await dispatcher.drain()

    anyio.run(scenario)
    assert welcomed == ["carol@acme.com"]


def test_failing_welcome_notification_does_not_fail_the_mutation(database: Database) -> None:
    async def notify(email: str) -> None:
        raise RuntimeError("mail server down")

    async def scenario() -> int:
        dispatcher = BackgroundDispatcher()
        allowlist = AllowlistSynchronizer(
            database,
            ApprovalPolicy(database),
            dispatcher=dispatcher,
            welcome_notifier=notify,
        )
        await allowlist.add_email("carol@acme.com")
        await dispatcher.drain()
        return dispatcher.pending

    assert anyio.run(scenario) == 0
    assert database.get_domain("acme.com").emails == ("carol@acme.com",)


def test_concurrent_additions_to_one_domain_are_not_lost(database: Database, allowlist: AllowlistSynchronizer) -> None:
    emails = [f"user{index}@acme.com" for index in range(8)]

    async def scenario() -> None:
        async with anyio.create_task_group() as task_group:
            for email in emails:
                task_group.start_soon(allowlist.add_email, email)

    anyio.run(scenario)
    assert sorted(database.get_domain("acme.com").emails) == sorted(emails)
