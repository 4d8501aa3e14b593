"""Tests for the account lockout guard."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from eventportal.auth.lockout import LockoutGuard
from eventportal.db.models import Account
from tests.conftest import STUDENT_ID, reload_account


class TestLockoutGuard:
    async def test_unknown_identifier_never_locked(self, db, settings):
        guard = LockoutGuard(settings)
        assert await guard.record_failure(db, "1001111") == 0
        status = await guard.check_lockout(db, "1001111")
        assert not status.locked

    async def test_locks_at_threshold(self, session_factory, db, settings, student):
        guard = LockoutGuard(settings)
        for expected in range(1, settings.account_lockout_threshold):
            assert await guard.record_failure(db, STUDENT_ID) == expected
            assert not (await guard.check_lockout(db, STUDENT_ID)).locked

        count = await guard.record_failure(db, STUDENT_ID)
        await db.commit()
        assert count == settings.account_lockout_threshold

        status = await guard.check_lockout(db, STUDENT_ID)
        assert status.locked
        assert status.remaining_minutes == settings.account_lockout_duration_minutes
        assert status.locked_until > datetime.now(timezone.utc)

        stored = await reload_account(session_factory, student.id)
        assert stored.failed_login_attempts == settings.account_lockout_threshold
        assert stored.locked_until is not None

    async def test_matches_derived_email_and_case(self, db, settings, student):
        guard = LockoutGuard(settings)
        await guard.record_failure(db, STUDENT_ID)
        assert await guard.record_failure(db, f"{STUDENT_ID}@{settings.institution_email_domain.upper()}") == 2

    async def test_success_resets(self, session_factory, db, settings, student):
        guard = LockoutGuard(settings)
        for _ in range(settings.account_lockout_threshold):
            await guard.record_failure(db, STUDENT_ID)
        await guard.record_success(db, STUDENT_ID)
        await db.commit()

        assert not (await guard.check_lockout(db, STUDENT_ID)).locked
        stored = await reload_account(session_factory, student.id)
        assert stored.failed_login_attempts == 0
        assert stored.locked_until is None

    async def test_count_restarts_outside_window(self, db, settings, student):
        guard = LockoutGuard(settings)
        for _ in range(3):
            await guard.record_failure(db, STUDENT_ID)
        await db.execute(
            update(Account)
            .where(Account.id == student.id)
            .values(failure_window_started_at=datetime.now(timezone.utc) - guard.window - timedelta(minutes=1))
        )
        assert await guard.record_failure(db, STUDENT_ID) == 1

    async def test_spaced_failures_do_not_accumulate_past_window(self, db, settings, student):
        guard = LockoutGuard(settings)
        step = guard.window - timedelta(minutes=1)
        counts = []
        for _ in range(settings.account_lockout_threshold):
            counts.append(await guard.record_failure(db, STUDENT_ID))
            # Age the failure by just under one window.
            stored = await db.get(Account, student.id, populate_existing=True)
            await db.execute(
                update(Account)
                .where(Account.id == student.id)
                .values(
                    failure_window_started_at=stored.failure_window_started_at - step,
                    last_failed_login_at=stored.last_failed_login_at - step,
                )
            )

        assert counts == [1, 2, 1, 2, 1]
        assert not (await guard.check_lockout(db, STUDENT_ID)).locked

    async def test_window_start_kept_within_window(self, session_factory, db, settings, student):
        guard = LockoutGuard(settings)
        await guard.record_failure(db, STUDENT_ID)
        await db.commit()
        opened = (await reload_account(session_factory, student.id)).failure_window_started_at

        await guard.record_failure(db, STUDENT_ID)
        await db.commit()
        stored = await reload_account(session_factory, student.id)
        assert stored.failed_login_attempts == 2
        assert stored.failure_window_started_at == opened

    async def test_expired_lock_clears_and_restarts(self, db, settings, student):
        guard = LockoutGuard(settings)
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        await db.execute(
            update(Account)
            .where(Account.id == student.id)
            .values(failed_login_attempts=settings.account_lockout_threshold, locked_until=past, last_failed_login_at=past)
        )
        assert not (await guard.check_lockout(db, STUDENT_ID)).locked
        assert await guard.record_failure(db, STUDENT_ID) == 1
        assert not (await guard.check_lockout(db, STUDENT_ID)).locked
