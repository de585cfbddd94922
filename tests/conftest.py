"""Pytest configuration and fixtures."""

import logging

import pytest

import chainorm


@pytest.fixture
def db(tmp_path):
    """Open a file-backed SQLite database in a temporary directory."""
    session = chainorm.open("sqlite3", str(tmp_path / "test.db"))
    yield session
    session.close()


@pytest.fixture
def statements(caplog):
    """Collect the SQL statements traced while a test runs.

    Returns a callable filtering the traced statements by a substring.
    """
    caplog.set_level(logging.DEBUG, logger="chainorm")

    def collect(fragment: str = "") -> list[str]:
        return [
            record.getMessage()
            for record in caplog.records
            if record.name == "chainorm.scope"
            and record.getMessage().startswith("[")
            and fragment in record.getMessage()
        ]

    return collect
