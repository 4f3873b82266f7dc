"""
Tests for the startup database connectivity wait.
"""
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from collabdesk.db import session


def _unreachable():
    return OperationalError("SELECT 1", {}, Exception("could not connect to server: Connection refused"))


def _bad_password():
    return OperationalError("SELECT 1", {}, Exception('password authentication failed for user "collabdesk"'))


class TestWaitForDatabase:
    def test_retries_until_reachable(self):
        sleep = MagicMock()
        with patch.object(session.engine, "connect", side_effect=[_unreachable(), MagicMock()]) as connect:
            session.wait_for_database(retries=3, delay=0.5, sleep=sleep)

        assert connect.call_count == 2
        sleep.assert_called_once_with(0.5)

    def test_gives_up_after_last_attempt(self):
        sleep = MagicMock()
        with patch.object(session.engine, "connect", side_effect=_unreachable()) as connect:
            with pytest.raises(OperationalError):
                session.wait_for_database(retries=3, delay=1, sleep=sleep)

        assert connect.call_count == 3
        assert sleep.call_count == 2

    def test_auth_failure_is_not_retried(self):
        sleep = MagicMock()
        with patch.object(session.engine, "connect", side_effect=_bad_password()) as connect:
            with pytest.raises(OperationalError):
                session.wait_for_database(retries=5, sleep=sleep)

        assert connect.call_count == 1
        sleep.assert_not_called()

    def test_sqlite_startup_skips_the_wait(self):
        with patch.object(session, "wait_for_database") as wait:
            session.init_db()
        wait.assert_not_called()
