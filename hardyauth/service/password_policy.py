from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hardyauth.config import DEFAULT_SPECIAL_CHARACTERS
from hardyauth.logging import get_logger
from hardyauth.service.clock import Clock, SystemClock
from hardyauth.storage.errors import StorageError
from hardyauth.storage.interfaces import HistoryStore

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

REASON_TOO_SHORT = "too_short"
REASON_TOO_LONG = "too_long"
REASON_MISSING_UPPERCASE = "missing_uppercase"
REASON_MISSING_LOWERCASE = "missing_lowercase"
REASON_MISSING_DIGIT = "missing_digit"
REASON_MISSING_SPECIAL = "missing_special"
REASON_FORBIDDEN_TERM = "forbidden_term"
REASON_REUSED = "reused"

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    # argon2 hash of an accepted candidate, already written to history
    password_hash: Optional[str] = None

    @classmethod
    def ok(cls, password_hash: Optional[str] = None) -> "ValidationResult":
        return cls(valid=True, password_hash=password_hash)

    @classmethod
    def fail(cls, reason: str, message: str) -> "ValidationResult":
        return cls(valid=False, reason=reason, message=message)


def build_password_hasher() -> PasswordHasher:
    return PasswordHasher(type=Type.ID)


class PasswordPolicyEngine:
    """Healthcare password rules plus reuse prevention against recent history.

    Rules run in a fixed order and the first failure is reported. Each rule is
    also exposed on its own (``check_*``) and returns ``None`` when satisfied.
    A successful :meth:`validate` is the single place a password enters
    history.
    """

    def __init__(
        self,
        history: HistoryStore,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Clock] = None,
        min_length: int = 12,
        max_length: int = 128,
        history_depth: int = 5,
        forbidden_terms: Iterable[str] = (),
        special_characters: str = DEFAULT_SPECIAL_CHARACTERS,
    ) -> None:
        if not special_characters:
            raise ValueError("special_characters must not be empty")
        self.history = history
        self.hasher = hasher or build_password_hasher()
        self.clock = clock or SystemClock()
        self.min_length = min_length
        self.max_length = max_length
        self.history_depth = history_depth
        self.forbidden_terms: Tuple[str, ...] = tuple(
            term.lower() for term in forbidden_terms if term
        )
        self.special_characters = frozenset(special_characters)

    # individual rules

    def check_length(self, candidate: str) -> Optional[ValidationResult]:
        if len(candidate) < self.min_length:
            return ValidationResult.fail(
                REASON_TOO_SHORT,
                f"Password must be at least {self.min_length} characters long",
            )
        if len(candidate) > self.max_length:
            return ValidationResult.fail(
                REASON_TOO_LONG,
                f"Password must be at most {self.max_length} characters long",
            )
        return None

    def check_uppercase(self, candidate: str) -> Optional[ValidationResult]:
        if not _UPPER.search(candidate):
            return ValidationResult.fail(
                REASON_MISSING_UPPERCASE,
                "Password must contain at least one uppercase letter",
            )
        return None

    def check_lowercase(self, candidate: str) -> Optional[ValidationResult]:
        if not _LOWER.search(candidate):
            return ValidationResult.fail(
                REASON_MISSING_LOWERCASE,
                "Password must contain at least one lowercase letter",
            )
        return None

    def check_digit(self, candidate: str) -> Optional[ValidationResult]:
        if not _DIGIT.search(candidate):
            return ValidationResult.fail(
                REASON_MISSING_DIGIT, "Password must contain at least one number"
            )
        return None

    def check_special(self, candidate: str) -> Optional[ValidationResult]:
        # only the configured symbols count
        if self.special_characters.isdisjoint(candidate):
            return ValidationResult.fail(
                REASON_MISSING_SPECIAL,
                "Password must contain at least one special character",
            )
        return None

    def check_forbidden_terms(self, candidate: str) -> Optional[ValidationResult]:
        lowered = candidate.lower()
        for term in self.forbidden_terms:
            if term in lowered:
                return ValidationResult.fail(
                    REASON_FORBIDDEN_TERM,
                    "Password cannot contain common words or patterns",
                )
        return None

    def check_history(
        self, candidate: str, principal_id: Optional[str]
    ) -> Optional[ValidationResult]:
        if not principal_id:
            return None
        try:
            entries = self.history.list_password_history(
                principal_id, self.history_depth
            )
        except StorageError as exc:
            # reuse check is skipped, every other rule has already run
            logger.error(
                "password_history_unavailable",
                principal_id=principal_id,
                error=str(exc),
            )
            return None
        for entry in entries[: self.history_depth]:
            if self.matches(entry.password_hash, candidate):
                return ValidationResult.fail(
                    REASON_REUSED,
                    f"Password cannot be the same as any of your last {self.history_depth} passwords",
                )
        return None

    @property
    def content_rules(self) -> List[Callable[[str], Optional[ValidationResult]]]:
        return [
            self.check_length,
            self.check_uppercase,
            self.check_lowercase,
            self.check_digit,
            self.check_special,
            self.check_forbidden_terms,
        ]

    # hashing

    def hash(self, password: str) -> str:
        return self.hasher.hash(password)

    def matches(self, password_hash: str, candidate: str) -> bool:
        try:
            return self.hasher.verify(password_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    # entry points

    def evaluate(
        self, candidate: str, principal_id: Optional[str] = None
    ) -> ValidationResult:
        """Run every rule without touching history."""
        if not isinstance(candidate, str):
            return ValidationResult.fail(REASON_TOO_SHORT, "Password is required")
        for rule in self.content_rules:
            failure = rule(candidate)
            if failure:
                return failure
        failure = self.check_history(candidate, principal_id)
        if failure:
            return failure
        return ValidationResult.ok()

    def validate(self, candidate: str, principal_id: str) -> ValidationResult:
        result = self.evaluate(candidate, principal_id)
        if not result.valid:
            logger.info(
                "password_rejected", principal_id=principal_id, reason=result.reason
            )
            return result
        password_hash = self.hash(candidate)
        try:
            pruned = self.history.append_password_history(
                principal_id,
                password_hash,
                keep=self.history_depth,
                now=self.clock.now(),
            )
        except StorageError as exc:
            logger.error(
                "password_history_write_failed",
                principal_id=principal_id,
                error=str(exc),
            )
        else:
            if pruned:
                logger.debug(
                    "password_history_pruned", principal_id=principal_id, pruned=pruned
                )
        return ValidationResult.ok(password_hash)

    def explain(self, candidate: str) -> Sequence[str]:
        """All failing content rule reasons, for client-side hints."""
        return [
            failure.reason
            for failure in (rule(candidate) for rule in self.content_rules)
            if failure and failure.reason
        ]
