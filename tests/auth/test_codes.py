"""Tests for one-time code issuing and consumption."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from eventportal.auth.codes import CodePurpose, OneTimeCodeIssuer, generate_code, hash_code
from eventportal.auth.errors import CodeAlreadyUsed, CodeExpired, InvalidCode, InvalidOrExpiredCode
from eventportal.db.models import OneTimeCode


class TestGenerateCode:
    def test_mfa_shape(self):
        code = generate_code(CodePurpose.MFA)
        assert len(code) == 7
        assert code.isalnum() and code == code.upper()

    def test_email_code_is_six_digits(self):
        code = generate_code(CodePurpose.EMAIL_VERIFY)
        assert len(code) == 6 and code.isdigit()

    def test_reset_token_is_long(self):
        assert len(generate_code(CodePurpose.PASSWORD_RESET)) >= 48

    def test_mfa_hash_ignores_case(self):
        assert hash_code(CodePurpose.MFA, "abc1234") == hash_code(CodePurpose.MFA, " ABC1234 ")
        assert hash_code(CodePurpose.PASSWORD_RESET, "abc") != hash_code(CodePurpose.PASSWORD_RESET, "ABC")


class TestIssueAndConsume:
    async def test_plaintext_never_stored(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        code = await issuer.issue(db, student.id, CodePurpose.MFA)
        row = (await db.execute(select(OneTimeCode))).scalar_one()
        assert row.code_hash != code
        assert row.code_hash == hash_code(CodePurpose.MFA, code)
        assert row.expires_at - row.created_at == timedelta(minutes=settings.mfa_code_ttl_minutes)

    async def test_consume_once(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        code = await issuer.issue(db, student.id, CodePurpose.MFA)
        consumed = await issuer.consume(db, student.id, CodePurpose.MFA, code.lower())
        assert consumed.used and consumed.used_at is not None

        with pytest.raises(CodeAlreadyUsed):
            await issuer.consume(db, student.id, CodePurpose.MFA, code)

    async def test_wrong_code(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        await issuer.issue(db, student.id, CodePurpose.MFA)
        with pytest.raises(InvalidCode):
            await issuer.consume(db, student.id, CodePurpose.MFA, "ZZZZZZZ")

    async def test_wrong_purpose(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        code = await issuer.issue(db, student.id, CodePurpose.EMAIL_VERIFY)
        with pytest.raises(InvalidCode):
            await issuer.consume(db, student.id, CodePurpose.MFA, code)

    async def test_expired(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        code = await issuer.issue(db, student.id, CodePurpose.MFA, ttl=timedelta(seconds=-1))
        with pytest.raises(CodeExpired):
            await issuer.consume(db, student.id, CodePurpose.MFA, code)

    async def test_failures_share_public_message(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        with pytest.raises(InvalidOrExpiredCode) as exc_info:
            await issuer.consume(db, student.id, CodePurpose.MFA, "AAAAAAA")
        assert exc_info.value.message == "Invalid or expired code"
        assert exc_info.value.reason == "code mismatch"

    async def test_new_code_supersedes_old(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        first = await issuer.issue(db, student.id, CodePurpose.MFA)
        second = await issuer.issue(db, student.id, CodePurpose.MFA)
        with pytest.raises(CodeAlreadyUsed):
            await issuer.consume(db, student.id, CodePurpose.MFA, first)
        await issuer.consume(db, student.id, CodePurpose.MFA, second)

    async def test_consume_token_by_value(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        token = await issuer.issue(db, student.id, CodePurpose.PASSWORD_RESET)
        consumed = await issuer.consume_token(db, CodePurpose.PASSWORD_RESET, token)
        assert consumed.account_id == student.id


class TestConcurrentConsume:
    async def test_stale_reader_loses_race(self, session_factory, settings, student):
        """Two sessions read the same unused row; only the first compare-and-set wins."""
        issuer = OneTimeCodeIssuer(settings)
        async with session_factory() as db:
            code = await issuer.issue(db, student.id, CodePurpose.MFA)
            await db.commit()

        async with session_factory() as slow, session_factory() as fast:
            stale = (await slow.execute(select(OneTimeCode))).scalar_one()
            assert stale.used is False
            await slow.commit()

            await issuer.consume(fast, student.id, CodePurpose.MFA, code)
            await fast.commit()

            with pytest.raises(CodeAlreadyUsed):
                await issuer._mark_used(slow, stale)


class TestHousekeeping:
    async def test_recent_unused(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        assert not await issuer.has_recent_unused(db, student.id, CodePurpose.MFA, 30)
        await issuer.issue(db, student.id, CodePurpose.MFA)
        assert await issuer.has_recent_unused(db, student.id, CodePurpose.MFA, 30)
        await issuer.revoke_latest(db, student.id, CodePurpose.MFA)
        assert not await issuer.has_recent_unused(db, student.id, CodePurpose.MFA, 30)

    async def test_revoke(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        code = await issuer.issue(db, student.id, CodePurpose.MFA)
        row = (await db.execute(select(OneTimeCode))).scalar_one()
        await issuer.revoke(db, row.id)
        with pytest.raises(CodeAlreadyUsed):
            await issuer.consume(db, student.id, CodePurpose.MFA, code)

    async def test_cleanup_removes_only_old_expired(self, db, settings, student):
        issuer = OneTimeCodeIssuer(settings)
        await issuer.issue(db, student.id, CodePurpose.EMAIL_VERIFY)
        await issuer.issue(db, student.id, CodePurpose.MFA)
        long_ago = datetime.now(timezone.utc) - timedelta(days=3)
        await db.execute(
            update(OneTimeCode).where(OneTimeCode.purpose == CodePurpose.MFA.value).values(expires_at=long_ago)
        )

        assert await issuer.cleanup_expired(db) == 1
        remaining = (await db.execute(select(func.count()).select_from(OneTimeCode))).scalar_one()
        assert remaining == 1
