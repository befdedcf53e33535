import logging
from datetime import timedelta

import pytest
from pydantic import SecretStr

from opinions_identity.errors import (
    AccountDisabled,
    EmailNotVerified,
    InternalFailure,
    InvalidCredentials,
)
from opinions_identity.models.enums import AuthErrorCode, RoleName
from opinions_identity.services.session_issuer import SessionIssuer

from conftest import STRONG_PASSWORD


def test_login_by_email_returns_session_and_minimal_user(auth, services, registered, clock):
    identity = registered()

    result = auth.login("ada@example.com", STRONG_PASSWORD)

    assert result.user.id == identity.id
    assert result.user.username == "ada"
    assert result.user.role == RoleName.USER_ROLE
    assert set(result.user.model_dump()) == {"id", "username", "profile_picture", "role"}
    assert result.expires_at == clock() + timedelta(minutes=30)

    claims = services["session_issuer"].decode(result.session)
    assert claims.sub == identity.id
    assert claims.role == RoleName.USER_ROLE
    assert claims.iss == "opinions-identity"


def test_login_by_username_is_case_insensitive(auth, registered):
    identity = registered()
    assert auth.login("ADA", STRONG_PASSWORD).user.id == identity.id


def test_unknown_identifier_and_wrong_password_look_identical(auth, registered):
    registered()
    with pytest.raises(InvalidCredentials) as unknown:
        auth.login("nobody@example.com", STRONG_PASSWORD)
    with pytest.raises(InvalidCredentials) as wrong:
        auth.login("ada@example.com", "Wr0ng!Password")
    assert unknown.value.message == wrong.value.message
    assert unknown.value.code == AuthErrorCode.INVALID_CREDENTIALS


@pytest.mark.parametrize("identifier", ["ada@example.com", "nobody@example.com"])
def test_unencodable_password_is_an_ordinary_failure(auth, registered, identifier):
    registered()
    with pytest.raises(InvalidCredentials):
        auth.login(identifier, "Abc\ud800def1!")


def test_wrong_password_is_checked_before_verification(auth, registered):
    registered(verify=False)
    with pytest.raises(InvalidCredentials):
        auth.login("ada@example.com", "Wr0ng!Password")


def test_unverified_identity_cannot_log_in(auth, registered):
    registered(verify=False)
    with pytest.raises(EmailNotVerified):
        auth.login("ada@example.com", STRONG_PASSWORD)


def test_verification_is_checked_before_active_flag(auth, services, registered, clock):
    identity = registered(verify=False)
    services["identity_repository"].set_active(identity.id, False, clock())
    with pytest.raises(EmailNotVerified):
        auth.login("ada@example.com", STRONG_PASSWORD)


def test_deactivated_identity_cannot_log_in(auth, services, registered):
    identity = registered()
    services["identity_admin_service"].deactivate(identity.id)
    with pytest.raises(AccountDisabled):
        auth.login("ada@example.com", STRONG_PASSWORD)


def test_admin_role_is_carried_in_the_session(auth, services, registered):
    identity = registered()
    services["role_service"].promote_to_role("ada@example.com", RoleName.ADMIN_ROLE)

    result = auth.login("ada", STRONG_PASSWORD)

    assert result.user.role == RoleName.ADMIN_ROLE
    assert services["session_issuer"].decode(result.session).role == RoleName.ADMIN_ROLE
    assert result.user.id == identity.id


def test_missing_assignment_falls_back_to_default_role(auth, services, registered, db, caplog):
    identity = registered()
    with db.write_lock:
        db.sqlite.execute("DELETE FROM user_roles WHERE user_id = ?", (identity.id,))
        db.sqlite.commit()

    with caplog.at_level(logging.WARNING):
        result = auth.login("ada@example.com", STRONG_PASSWORD)

    assert result.user.role == RoleName.USER_ROLE
    assert "no role assignment" in caplog.text


def test_session_signed_with_another_key_is_rejected(auth, services, registered, config, logger, clock):
    registered()
    forger = SessionIssuer(
        config=config.model_copy(update={"JWT_SECRET": SecretStr("some-other-signing-key-of-decent-length")}),
        logger=logger,
        clock=clock,
    )
    forged, _ = forger.issue("identity-1", RoleName.ADMIN_ROLE)
    with pytest.raises(InvalidCredentials):
        services["session_issuer"].decode(forged)


def test_session_ttl_follows_configuration(config, logger, clock):
    issuer = SessionIssuer(
        config=config.model_copy(update={"JWT_EXPIRES_IN": "2h"}),
        logger=logger,
        clock=clock,
    )
    _, expires_at = issuer.issue("identity-1", RoleName.USER_ROLE)
    assert expires_at == clock() + timedelta(hours=2)


def test_unconfigured_secret_refuses_sessions(config, logger, clock):
    issuer = SessionIssuer(
        config=config.model_copy(update={"JWT_SECRET": SecretStr("")}),
        logger=logger,
        clock=clock,
    )
    with pytest.raises(InternalFailure):
        issuer.issue("identity-1", RoleName.USER_ROLE)
