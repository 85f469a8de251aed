import threading
from datetime import datetime, timedelta, timezone

import pytest

from hardyauth.storage.errors import ConstraintViolation
from hardyauth.storage.models import AuditLogEntry, Session, TenantMembership
from hardyauth.storage.secrets import SecretCipher

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_principal_email_is_unique_case_insensitively(store):
    principal = store.create_principal("Ana@Clinic.example")
    assert store.get_principal_by_email(" ANA@clinic.EXAMPLE ").id == principal.id
    with pytest.raises(ConstraintViolation):
        store.create_principal("ana@clinic.example")


def test_returned_records_are_copies(store):
    principal = store.create_principal("ana@clinic.example")
    principal.is_active = False
    assert store.get_principal(principal.id).is_active


def test_dependent_records_need_a_principal(store):
    with pytest.raises(ConstraintViolation):
        store.save_credential("ghost", "hash", "argon2id")
    with pytest.raises(ConstraintViolation):
        store.create_session(Session("t", "ghost", NOW, NOW + timedelta(minutes=1)))
    with pytest.raises(ConstraintViolation):
        store.add_membership(TenantMembership("ghost", "org-a", "staff"))


def test_failed_logins_lock_once(store):
    principal = store.create_principal("ana@clinic.example")
    store.save_credential(principal.id, "hash", "argon2id")
    for minute in range(3):
        credential = store.record_failed_login(
            principal.id, max_attempts=2, now=NOW + timedelta(minutes=minute)
        )
    # the lock time is the moment the threshold was first reached
    assert credential.failed_attempts == 3
    assert credential.locked_at == NOW + timedelta(minutes=1)

    store.reset_failed_logins(principal.id)
    credential = store.get_credential(principal.id)
    assert (credential.failed_attempts, credential.locked_at) == (0, None)


def test_backup_codes_consume_once(store):
    principal = store.create_principal("ana@clinic.example")
    store.replace_backup_codes(principal.id, ["d1", "d2"], NOW)
    assert store.consume_backup_code(principal.id, "d1", NOW)
    assert not store.consume_backup_code(principal.id, "d1", NOW)
    assert store.count_unused_backup_codes(principal.id) == 1


def test_concurrent_counter_increments_are_not_lost(store):
    def worker():
        for _ in range(200):
            store.increment_counter("shared", 60, NOW)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert store.counters["shared"].count == 1600


def test_concurrent_history_appends_keep_depth(store):
    def worker(n):
        for i in range(25):
            store.append_password_history("p1", f"hash-{n}-{i}", keep=5, now=NOW)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(store.password_history["p1"]) == 5


def test_memberships_sorted_by_join_time(store):
    principal = store.create_principal("ana@clinic.example")
    store.add_membership(TenantMembership(principal.id, "org-b", "staff", joined_at=NOW + timedelta(days=1)))
    store.add_membership(TenantMembership(principal.id, "org-a", "clinician", joined_at=NOW))
    assert [m.organization_id for m in store.list_memberships(principal.id)] == ["org-a", "org-b"]


def test_audit_ties_keep_newest_insert_first(store):
    for action in ("first", "second"):
        store.append_audit(AuditLogEntry(action=action, outcome="success", timestamp=NOW))
    assert [e.action for e in store.list_audit()] == ["second", "first"]


def test_totp_secret_is_encrypted_at_rest(store):
    principal = store.create_principal("ana@clinic.example")
    returned = store.set_totp_secret(principal.id, "JBSWY3DPEHPK3PXP", NOW)
    assert returned.secret == "JBSWY3DPEHPK3PXP"
    assert store.totp_secrets[principal.id].secret != "JBSWY3DPEHPK3PXP"
    assert store.get_totp_secret(principal.id).secret == "JBSWY3DPEHPK3PXP"
    assert store.confirm_totp_secret(principal.id, NOW).secret == "JBSWY3DPEHPK3PXP"


def test_cipher_passes_legacy_plaintext_through():
    cipher = SecretCipher("key-one")
    token = cipher.encrypt("JBSWY3DPEHPK3PXP")
    assert token != "JBSWY3DPEHPK3PXP"
    assert cipher.decrypt(token) == "JBSWY3DPEHPK3PXP"
    assert cipher.decrypt("JBSWY3DPEHPK3PXP") == "JBSWY3DPEHPK3PXP"
    assert cipher.encrypt("") == ""
