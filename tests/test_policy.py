from __future__ import annotations

from pathlib import Path

import anyio
import pytest

from portal.database import Database
from portal.models import DomainRecord
from portal.policy import (
    ApprovalPolicy,
    GENERIC_EMAIL_PROVIDERS,
    evaluate,
    extract_domain,
    is_generic_email_provider,
)


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "portal.sqlite3")
    db.initialize()
    return db


def test_extract_domain_handles_malformed_addresses() -> None:
    assert extract_domain("Alice@Example.COM ") == "example.com"
    assert extract_domain("no-at-sign") is None
    assert extract_domain("trailing@") is None


def test_generic_provider_list_is_case_insensitive() -> None:
    assert len(GENERIC_EMAIL_PROVIDERS) == 18
    assert is_generic_email_provider("Gmail.com")
    assert not is_generic_email_provider("acme.com")


def test_company_domain_record_approves_every_address() -> None:
    record = DomainRecord(domain="example.com")
    assert evaluate("anyone@example.com", record)
    assert evaluate("ANYONE@EXAMPLE.COM", record)


def test_generic_domain_requires_explicit_listing() -> None:
    record = DomainRecord(domain="gmail.com", emails=("bob@gmail.com",))
    assert evaluate("bob@gmail.com", record)
    assert evaluate(" Bob@Gmail.com", record)
    assert not evaluate("eve@gmail.com", record)


def test_missing_record_or_domain_is_never_approved() -> None:
    assert not evaluate("carol@unknown.io", None)
    assert not evaluate("not-an-email", DomainRecord(domain="example.com"))


def test_policy_reads_domain_records(database: Database) -> None:
    database.mutate_domain("example.com", lambda current: DomainRecord(domain="example.com"))
    database.mutate_domain("gmail.com", lambda current: DomainRecord(domain="gmail.com", emails=("bob@gmail.com",)))
    policy = ApprovalPolicy(database)

    async def scenario() -> list[bool]:
        return [
            await policy.is_approved("anyone@example.com"),
            await policy.is_approved("bob@gmail.com"),
            await policy.is_approved("eve@gmail.com"),
            await policy.is_approved("carol@unknown.io"),
            await policy.is_approved("broken"),
        ]

    assert anyio.run(scenario) == [True, True, False, False, False]
