"""Tests for CLI commands and helper functions."""

import json

import pytest
from click.testing import CliRunner

from async_notify_service.auth import TokenVerifier
from async_notify_service.cli import get_persistence, main, run_async


@pytest.fixture
def runner(monkeypatch, tmp_path):
    monkeypatch.setenv("GNS_CONFIG", str(tmp_path / "absent.ini"))
    monkeypatch.setenv("GNS_JWT_SECRET", "cli-test-secret-0123456789abcdefghij")
    return CliRunner()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


def test_run_async():
    async def answer():
        return 42

    assert run_async(answer()) == 42


def test_enqueue_list_and_stats(runner, db_path):
    result = runner.invoke(main, ["--db", db_path, "enqueue", "a@example.com", "Hello", "<p>x</p>", "--priority", "high"])
    assert result.exit_code == 0, result.output
    assert "Queued message" in result.output

    result = runner.invoke(main, ["--db", db_path, "list", "--json"])
    assert result.exit_code == 0, result.output
    messages = json.loads(result.output)
    assert messages[0]["to"] == "a@example.com"
    assert messages[0]["priority"] == "high"

    result = runner.invoke(main, ["--db", db_path, "stats", "--json"])
    assert json.loads(result.output)["pending"] == 1

    result = runner.invoke(main, ["--db", db_path, "list", "--status", "failed"])
    assert "No messages found" in result.output


def test_retry_failed_and_cleanup(runner, db_path):
    persistence = get_persistence(db_path)

    async def seed():
        await persistence.init_db()
        await persistence.insert_message(
            {"id": "m1", "to": "a@example.com", "subject": "s", "priority": 2, "scheduled_at": 0, "max_retries": 1}
        )
        await persistence.mark_processing("m1")
        await persistence.mark_failed("m1", retry_count=1, error="boom")

    run_async(seed())

    result = runner.invoke(main, ["--db", db_path, "retry-failed", "m1"])
    assert result.exit_code == 0, result.output
    assert "Re-queued 1 message(s)" in result.output

    result = runner.invoke(main, ["--db", db_path, "cleanup", "--days", "0"])
    assert "Removed 0 sent message(s)" in result.output

    result = runner.invoke(main, ["--db", db_path, "cleanup", "--days", "-1"])
    assert result.exit_code == 1


def test_add_template_and_user(runner, db_path):
    result = runner.invoke(main, ["--db", db_path, "add-template", "t1", "notification", "Hi", "{{content}}"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(main, ["--db", db_path, "add-user", "42", "alice", "alice@example.com"])
    assert result.exit_code == 0, result.output

    persistence = get_persistence(db_path)
    assert run_async(persistence.find_active_template("notification"))["id"] == "t1"
    assert run_async(persistence.get_user("42"))["email"] == "alice@example.com"


def test_issue_token_is_verifiable(runner):
    result = runner.invoke(main, ["issue-token", "42", "--username", "alice"])
    assert result.exit_code == 0, result.output
    identity = TokenVerifier("cli-test-secret-0123456789abcdefghij").verify(result.output.strip())
    assert identity.user_id == "42"
    assert identity.username == "alice"


def test_issue_token_requires_secret(runner, monkeypatch):
    monkeypatch.delenv("GNS_JWT_SECRET")
    result = runner.invoke(main, ["issue-token", "42"])
    assert result.exit_code == 1
