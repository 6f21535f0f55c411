from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

MIN_LENGTH = 8
STRONG_LENGTH = 12

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

_STRENGTH_LABELS = {3: "medium", 4: "strong", 5: "very_strong"}


@dataclass(frozen=True)
class PasswordEvaluation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    strength: str = "weak"


def strength_label(password: str) -> str:
    score = 0
    if len(password) >= MIN_LENGTH:
        score += 1
    if len(password) >= STRONG_LENGTH:
        score += 1
    if _LOWER.search(password) and _UPPER.search(password):
        score += 1
    if _DIGIT.search(password):
        score += 1
    if _SYMBOL.search(password):
        score += 1
    return _STRENGTH_LABELS.get(score, "weak")


def evaluate(password: str) -> PasswordEvaluation:
    """Check ``password`` against the strength rules.

    Returns one error message per violated rule; the strength label is scored
    independently so a rejected password still reports how close it came.
    """
    errors: List[str] = []
    if len(password) < MIN_LENGTH:
        errors.append(f"Password must be at least {MIN_LENGTH} characters long")
    if not _UPPER.search(password):
        errors.append("Password must contain at least one uppercase letter")
    if not _LOWER.search(password):
        errors.append("Password must contain at least one lowercase letter")
    if not _DIGIT.search(password):
        errors.append("Password must contain at least one number")
    if not _SYMBOL.search(password):
        errors.append("Password must contain at least one special character")
    return PasswordEvaluation(
        is_valid=not errors, errors=errors, strength=strength_label(password)
    )


class PasswordHashing:
    """argon2id hashing for stored credentials."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), self.algorithm

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
