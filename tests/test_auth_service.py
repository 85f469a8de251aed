import asyncio

import pytest

from hardyauth.service.auth import AuthService
from hardyauth.service.errors import (
    AccountLocked,
    AuthenticationError,
    ConflictError,
    InvalidCredentials,
    MFARequired,
    PasswordPolicyViolation,
    RateLimitExceeded,
    SessionNotFound,
    ValidationError,
)
from hardyauth.storage.models import OUTCOME_FAILURE, OUTCOME_SUCCESS, SEVERITY_CRITICAL

PASSWORD = "Blue.Lantern.42x"
NEW_PASSWORD = "Quiet#River2024x"


@pytest.fixture
def registered(auth_service):
    return asyncio.run(
        auth_service.register_principal("Ana@Clinic.example", PASSWORD, name="Ana")
    )


def _code(auth_service, principal_id):
    secret = auth_service.store.get_totp_secret(principal_id).secret
    return auth_service.totp.current_code(secret, auth_service.clock.now().timestamp())


async def _enroll(auth_service, principal):
    await auth_service.setup_totp(principal)
    return await auth_service.confirm_totp(principal.id, _code(auth_service, principal.id))


async def test_register_and_login(auth_service, registered, store):
    assert registered.email == "ana@clinic.example"
    assert len(store.password_history[registered.id]) == 1

    result = await auth_service.login("ana@clinic.example", PASSWORD, ip_addr="10.0.0.1")
    assert result.principal.id == registered.id
    resolved = auth_service.resolve_session({"session": result.session.token})
    assert resolved.principal.id == registered.id

    actions = [(e.action, e.outcome) for e in store.audit_log]
    assert actions == [("auth.register", OUTCOME_SUCCESS), ("auth.login", OUTCOME_SUCCESS)]


async def test_register_rejects_weak_password(auth_service, store):
    with pytest.raises(PasswordPolicyViolation) as excinfo:
        await auth_service.register_principal("bo@clinic.example", "short")
    assert excinfo.value.detail == {"rule": "too_short"}
    assert store.get_principal_by_email("bo@clinic.example") is None


async def test_failed_registrations_are_audited(auth_service, registered, store):
    with pytest.raises(PasswordPolicyViolation):
        await auth_service.register_principal(
            "weak@clinic.example", "short", ip_addr="198.51.100.4"
        )
    weak = store.audit_log[-1]
    assert (weak.action, weak.outcome, weak.reason) == (
        "auth.register",
        OUTCOME_FAILURE,
        "password_policy",
    )
    assert weak.ip_address == "198.51.100.4"
    assert weak.details == {"rule": "too_short"}

    with pytest.raises(ConflictError):
        await auth_service.register_principal("ANA@clinic.example", NEW_PASSWORD)
    duplicate = store.audit_log[-1]
    assert (duplicate.outcome, duplicate.reason) == (OUTCOME_FAILURE, "conflict")
    assert duplicate.actor_id is None


async def test_registration_is_rate_limited_per_ip(store, settings, clock, fast_hasher):
    service = AuthService(
        store,
        settings.model_copy(update={"rate_limit_max_requests": 2}),
        clock=clock,
        hasher=fast_hasher,
    )
    for n in range(2):
        with pytest.raises(PasswordPolicyViolation):
            await service.register_principal(f"p{n}@clinic.example", "short", ip_addr="10.0.0.7")
    with pytest.raises(RateLimitExceeded):
        await service.register_principal("late@clinic.example", PASSWORD, ip_addr="10.0.0.7")
    assert store.get_principal_by_email("late@clinic.example") is None
    assert store.audit_log[-1].reason == "rate_limited"
    # another client still gets through
    await service.register_principal("other@clinic.example", PASSWORD, ip_addr="10.0.0.8")


async def test_login_unknown_email_is_generic(auth_service, store):
    with pytest.raises(InvalidCredentials) as excinfo:
        await auth_service.login("ghost@clinic.example", PASSWORD)
    assert excinfo.value.message == "invalid email or password"
    assert store.audit_log[-1].outcome == OUTCOME_FAILURE
    assert store.audit_log[-1].actor_id is None


async def test_lockout_after_repeated_failures(auth_service, registered, clock, store):
    for _ in range(4):
        with pytest.raises(InvalidCredentials):
            await auth_service.login("ana@clinic.example", "Wrong-Lantern-1x")
    with pytest.raises(AccountLocked):
        await auth_service.login("ana@clinic.example", "Wrong-Lantern-1x")
    # correct password is refused while locked
    with pytest.raises(AccountLocked):
        await auth_service.login("ana@clinic.example", PASSWORD)

    failures = [e for e in store.audit_log if e.outcome == OUTCOME_FAILURE]
    assert failures[-1].reason == "account_locked"
    assert failures[-1].severity == SEVERITY_CRITICAL

    clock.advance(minutes=31)
    result = await auth_service.login("ana@clinic.example", PASSWORD)
    assert result.principal.id == registered.id
    assert store.get_credential(registered.id).failed_attempts == 0


async def test_disabled_account_cannot_login(auth_service, registered, store):
    store.set_principal_active(registered.id, False)
    with pytest.raises(AuthenticationError) as excinfo:
        await auth_service.login("ana@clinic.example", PASSWORD)
    assert excinfo.value.reason == "account_disabled"


async def test_two_factor_enrollment_flow(auth_service, registered):
    status = auth_service.two_factor_status(registered.id)
    assert status == {"enabled": False, "pending": False, "backup_codes_remaining": 0}

    enrollment = await auth_service.setup_totp(registered)
    assert enrollment.provisioning_uri.startswith("otpauth://totp/")
    assert auth_service.two_factor_status(registered.id)["pending"]
    # unconfirmed secrets do not verify
    assert not auth_service.verify_totp(registered.id, _code(auth_service, registered.id))

    with pytest.raises(ValidationError) as excinfo:
        await auth_service.confirm_totp(registered.id, "000000")
    assert excinfo.value.reason == "invalid_second_factor"

    codes = await auth_service.confirm_totp(registered.id, _code(auth_service, registered.id))
    assert len(codes) == 8
    assert auth_service.two_factor_status(registered.id) == {
        "enabled": True,
        "pending": False,
        "backup_codes_remaining": 8,
    }
    assert auth_service.verify_totp(registered.id, _code(auth_service, registered.id))

    with pytest.raises(ConflictError):
        await auth_service.setup_totp(registered)


async def test_confirm_without_enrollment(auth_service, registered):
    with pytest.raises(ValidationError) as excinfo:
        await auth_service.confirm_totp(registered.id, "123456")
    assert excinfo.value.reason == "totp_not_enrolled"


async def test_login_requires_second_factor(auth_service, registered):
    codes = await _enroll(auth_service, registered)

    with pytest.raises(MFARequired):
        await auth_service.login("ana@clinic.example", PASSWORD)

    with pytest.raises(InvalidCredentials) as excinfo:
        await auth_service.login("ana@clinic.example", PASSWORD, otp_code="000000")
    assert excinfo.value.reason == "invalid_second_factor"

    otp = _code(auth_service, registered.id)
    assert (await auth_service.login("ana@clinic.example", PASSWORD, otp_code=otp)).session

    backup = codes[0].lower()
    assert (await auth_service.login("ana@clinic.example", PASSWORD, backup_code=backup)).session
    with pytest.raises(InvalidCredentials):
        await auth_service.login("ana@clinic.example", PASSWORD, backup_code=codes[0])
    assert auth_service.two_factor_status(registered.id)["backup_codes_remaining"] == 7


async def test_backup_codes_are_stored_as_digests(auth_service, registered, store):
    codes = await _enroll(auth_service, registered)
    stored = {c.code_digest for c in store.backup_codes[registered.id]}
    assert not stored & set(codes)
    assert len(stored) == len(codes)


async def test_regenerate_backup_codes_invalidates_old_set(auth_service, registered):
    old = await _enroll(auth_service, registered)
    new = await auth_service.generate_backup_codes(registered.id)
    assert not auth_service.consume_backup_code(registered.id, old[0])
    assert auth_service.consume_backup_code(registered.id, new[0])
    assert not auth_service.consume_backup_code(registered.id, "")


async def test_generate_backup_codes_requires_two_factor(auth_service, registered):
    with pytest.raises(ValidationError):
        await auth_service.generate_backup_codes(registered.id)


async def test_disable_with_wrong_password_through_pipeline(auth_service, registered, store):
    await _enroll(auth_service, registered)
    login = await auth_service.login("ana@clinic.example", PASSWORD, otp_code=_code(auth_service, registered.id))

    async def handler(ctx):
        await auth_service.disable_totp(ctx.principal_id, "Wrong-Lantern-1x")

    with pytest.raises(AuthenticationError) as excinfo:
        await auth_service.run_pipeline(
            "auth.two_factor.disable",
            (),
            handler,
            carrier={"Authorization": f"Bearer {login.session.token}"},
            require_tenant=False,
        )
    assert excinfo.value.status_code == 401
    entry = store.audit_log[-1]
    assert entry.action == "auth.two_factor.disable"
    assert entry.outcome == OUTCOME_FAILURE
    assert entry.reason == "invalid_credentials"
    assert entry.actor_id == registered.id
    assert auth_service.two_factor_status(registered.id)["enabled"]


async def test_disable_removes_secret_and_backup_codes(auth_service, registered):
    await _enroll(auth_service, registered)
    await auth_service.disable_totp(registered.id, PASSWORD)
    assert auth_service.two_factor_status(registered.id) == {
        "enabled": False,
        "pending": False,
        "backup_codes_remaining": 0,
    }
    # password alone is enough again
    assert (await auth_service.login("ana@clinic.example", PASSWORD)).session
    with pytest.raises(ValidationError):
        await auth_service.disable_totp(registered.id, PASSWORD)


async def test_change_password(auth_service, registered, store):
    with pytest.raises(InvalidCredentials):
        await auth_service.change_password(registered.id, "Wrong-Lantern-1x", NEW_PASSWORD)

    with pytest.raises(PasswordPolicyViolation) as excinfo:
        await auth_service.change_password(registered.id, PASSWORD, PASSWORD)
    assert excinfo.value.detail == {"rule": "reused"}

    await auth_service.change_password(registered.id, PASSWORD, NEW_PASSWORD)
    assert auth_service.verify_password(registered.id, NEW_PASSWORD)
    assert not auth_service.verify_password(registered.id, PASSWORD)
    assert len(store.password_history[registered.id]) == 2


def test_validate_password_is_a_dry_run(auth_service, registered, store):
    assert auth_service.validate_password(NEW_PASSWORD, registered.id).valid
    assert auth_service.validate_password(PASSWORD, registered.id).reason == "reused"
    assert len(store.password_history[registered.id]) == 1


async def test_logout_and_sweep(auth_service, registered, clock):
    login = await auth_service.login("ana@clinic.example", PASSWORD)
    await auth_service.logout(login.session.token)
    with pytest.raises(AuthenticationError):
        auth_service.resolve_session({"session": login.session.token})

    await auth_service.login("ana@clinic.example", PASSWORD)
    clock.advance(seconds=auth_service.settings.session_ttl_seconds)
    assert auth_service.sweep_expired_sessions() == 1


def test_memberships_and_tenant_context(auth_service, registered):
    auth_service.add_membership(registered.id, "org-a", "clinician")
    context = auth_service.resolve_tenant_context(registered)
    assert (context.organization_id, context.role) == ("org-a", "clinician")

    with pytest.raises(ConflictError):
        auth_service.add_membership(registered.id, "org-a", "staff")
    with pytest.raises(ValidationError):
        auth_service.add_membership(registered.id, "org-b", "system_admin")
    with pytest.raises(ValidationError):
        auth_service.add_membership(registered.id, "org-b", "staff", status="archived")


async def test_configured_admin_is_system_admin(auth_service):
    admin = await auth_service.register_principal("root@hardy.example", PASSWORD)
    context = auth_service.resolve_tenant_context(admin)
    assert context.is_system_admin
    assert context.organization_id is None


async def test_password_reset_flow(auth_service, registered, store, clock):
    delivered = []

    async def notifier(principal, token):
        delivered.append((principal.id, token))

    auth_service.reset_notifier = notifier
    session = (await auth_service.login("ana@clinic.example", PASSWORD)).session
    token = await auth_service.request_password_reset("ana@clinic.example", ip_addr="10.0.0.3")

    assert delivered == [(registered.id, token)]
    # only a keyed digest is stored
    assert token not in store.reset_tokens
    assert len(store.reset_tokens) == 1

    principal = await auth_service.complete_password_reset(token, NEW_PASSWORD)
    assert principal.id == registered.id
    assert auth_service.verify_password(registered.id, NEW_PASSWORD)
    assert len(store.password_history[registered.id]) == 2
    with pytest.raises(SessionNotFound):
        auth_service.resolve_session({"session": session.token})

    entry = store.audit_log[-1]
    assert (entry.action, entry.outcome) == ("auth.password.reset", OUTCOME_SUCCESS)
    assert entry.details == {"sessions_revoked": 1}

    # single use
    with pytest.raises(ValidationError) as excinfo:
        await auth_service.complete_password_reset(token, "Other.Lantern.77x")
    assert excinfo.value.reason == "invalid_reset_token"
    assert store.audit_log[-1].outcome == OUTCOME_FAILURE


async def test_reset_for_unknown_email_issues_nothing(auth_service, store):
    assert await auth_service.request_password_reset("ghost@clinic.example") is None
    assert store.reset_tokens == {}
    entry = store.audit_log[-1]
    assert entry.outcome == OUTCOME_SUCCESS
    assert entry.details == {"issued": False}


async def test_reset_token_expires(auth_service, registered, clock):
    token = await auth_service.request_password_reset("ana@clinic.example")
    clock.advance(seconds=auth_service.settings.password_reset_ttl_seconds)
    with pytest.raises(ValidationError) as excinfo:
        await auth_service.complete_password_reset(token, NEW_PASSWORD)
    assert excinfo.value.reason == "invalid_reset_token"
    assert auth_service.verify_password(registered.id, PASSWORD)


async def test_reset_policy_failure_keeps_token(auth_service, registered, store):
    token = await auth_service.request_password_reset("ana@clinic.example")
    with pytest.raises(PasswordPolicyViolation) as excinfo:
        await auth_service.complete_password_reset(token, PASSWORD)
    assert excinfo.value.detail == {"rule": "reused"}
    failure = store.audit_log[-1]
    assert (failure.reason, failure.actor_id) == ("password_policy", registered.id)
    # no history write on rejection, and the token can still be used
    assert len(store.password_history[registered.id]) == 1
    await auth_service.complete_password_reset(token, NEW_PASSWORD)
    assert len(store.password_history[registered.id]) == 2


async def test_new_reset_request_supersedes_old_token(auth_service, registered):
    first = await auth_service.request_password_reset("ana@clinic.example")
    second = await auth_service.request_password_reset("ana@clinic.example")
    with pytest.raises(ValidationError):
        await auth_service.complete_password_reset(first, NEW_PASSWORD)
    await auth_service.complete_password_reset(second, NEW_PASSWORD)


async def test_reset_clears_lockout(auth_service, registered):
    for _ in range(auth_service.settings.max_failed_logins):
        with pytest.raises(AuthenticationError):
            await auth_service.login("ana@clinic.example", "Wrong-Lantern-1x")
    token = await auth_service.request_password_reset("ana@clinic.example")
    await auth_service.complete_password_reset(token, NEW_PASSWORD)
    result = await auth_service.login("ana@clinic.example", NEW_PASSWORD)
    assert result.principal.id == registered.id


async def test_reset_completion_is_rate_limited(auth_service, store):
    for _ in range(auth_service.settings.password_reset_max_attempts):
        with pytest.raises(ValidationError):
            await auth_service.complete_password_reset("forged", NEW_PASSWORD, ip_addr="10.0.0.5")
    with pytest.raises(RateLimitExceeded):
        await auth_service.complete_password_reset("forged", NEW_PASSWORD, ip_addr="10.0.0.5")
    assert store.audit_log[-1].reason == "rate_limited"
