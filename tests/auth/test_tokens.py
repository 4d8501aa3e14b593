"""Tests for session tokens: versioning, session rows and logout."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import select, update

from eventportal.auth.errors import InvalidToken
from eventportal.auth.tokens import SessionTokenIssuer, _load_keys
from eventportal.db.models import UserSession
from tests.conftest import reload_account


class TestIssue:
    async def test_claims(self, db, settings, student):
        issuer = SessionTokenIssuer(settings)
        issued = await issuer.issue(db, student)
        claims = issuer.decode(issued.token)
        assert claims["sub"] == str(student.id)
        assert claims["identifier"] == student.identifier
        assert claims["role"] == "student"
        assert claims["ver"] == 0
        assert claims["sid"] == issued.session_id
        assert claims["iss"] == settings.jwt_issuer
        assert issued.expires_in == settings.session_duration_hours * 3600

    async def test_session_row_created(self, db, settings, student):
        issued = await SessionTokenIssuer(settings).issue(db, student)
        row = (await db.execute(select(UserSession))).scalar_one()
        assert row.session_id == issued.session_id
        assert row.account_id == student.id
        assert row.is_active


class TestAuthenticate:
    async def test_valid_token(self, db, settings, student):
        issuer = SessionTokenIssuer(settings)
        issued = await issuer.issue(db, student)
        account, claims = await issuer.authenticate(db, issued.token)
        assert account.id == student.id
        assert claims["sid"] == issued.session_id

    async def test_garbage_token(self, db, settings):
        with pytest.raises(InvalidToken):
            await SessionTokenIssuer(settings).authenticate(db, "not.a.token")

    async def test_expired_token(self, db, settings, student):
        private_key, _ = _load_keys(settings)
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "sub": str(student.id),
                "ver": 0,
                "sid": "x",
                "iat": now - timedelta(hours=2),
                "exp": now - timedelta(hours=1),
                "iss": settings.jwt_issuer,
                "type": "access",
            },
            private_key,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(InvalidToken, match="expired"):
            await SessionTokenIssuer(settings).authenticate(db, token)

    async def test_version_bump_invalidates_every_token(self, session_factory, db, settings, student):
        issuer = SessionTokenIssuer(settings)
        first = await issuer.issue(db, student)
        second = await issuer.issue(db, student)
        await db.commit()

        assert await issuer.invalidate_all(db, student.id) == 1
        await db.commit()

        for issued in (first, second):
            with pytest.raises(InvalidToken):
                await issuer.authenticate(db, issued.token)
        assert (await reload_account(session_factory, student.id)).session_token_version == 1

        fresh_account = await reload_account(session_factory, student.id)
        fresh = await issuer.issue(db, fresh_account)
        account, _ = await issuer.authenticate(db, fresh.token)
        assert account.session_token_version == 1

    async def test_logout_ends_only_that_session(self, db, settings, student):
        issuer = SessionTokenIssuer(settings)
        first = await issuer.issue(db, student)
        second = await issuer.issue(db, student)

        assert await issuer.deactivate_session(db, first.session_id)
        assert not await issuer.deactivate_session(db, first.session_id)

        with pytest.raises(InvalidToken, match="ended"):
            await issuer.authenticate(db, first.token)
        account, _ = await issuer.authenticate(db, second.token)
        assert account.id == student.id

    async def test_expired_session_row(self, db, settings, student):
        issuer = SessionTokenIssuer(settings)
        issued = await issuer.issue(db, student)
        await db.execute(
            update(UserSession)
            .where(UserSession.session_id == issued.session_id)
            .values(expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        with pytest.raises(InvalidToken):
            await issuer.authenticate(db, issued.token)
