from __future__ import annotations

import unicodedata
from typing import Iterable, Optional, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from medguard.logging import get_logger
from medguard.service.audit import SecurityEventRecorder
from medguard.service.clock import ClockSource, SystemClock
from medguard.service.errors import ValidationError, read_with_retry, write_or_fail
from medguard.storage.common import SecurityStore
from medguard.storage.models import (
    SECURITY_QUESTION_COUNT,
    SecurityQuestion,
    SecurityQuestionSet,
)

logger = get_logger(__name__)


def normalize_answer(answer: str) -> str:
    """Case-fold and collapse whitespace so trivial typing differences still match."""
    return " ".join(unicodedata.normalize("NFKC", answer).split()).lower()


class RecoveryQuestionVault:
    """Knowledge-based recovery answers, stored only as argon2id hashes.

    Verification is all-or-nothing: every stored answer must match.
    """

    def __init__(
        self,
        store: SecurityStore,
        *,
        clock: Optional[ClockSource] = None,
        recorder: Optional[SecurityEventRecorder] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.recorder = recorder
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def save(self, user_id: str, pairs: Iterable[Tuple[str, str]]) -> None:
        entries = [(str(q or "").strip(), str(a or "")) for q, a in pairs]
        if len(entries) != SECURITY_QUESTION_COUNT:
            raise ValidationError(
                f"exactly {SECURITY_QUESTION_COUNT} security questions are required",
                detail={"received": len(entries)},
            )
        if any(not question for question, _ in entries):
            raise ValidationError("every security question must be selected")
        if len({question.lower() for question, _ in entries}) != SECURITY_QUESTION_COUNT:
            raise ValidationError("security questions must be different")
        if any(not normalize_answer(answer) for _, answer in entries):
            raise ValidationError("every security question needs an answer")

        question_set = SecurityQuestionSet(
            user_id=user_id,
            questions=tuple(
                SecurityQuestion(
                    question=question,
                    answer_hash=self._hasher.hash(normalize_answer(answer)),
                )
                for question, answer in entries
            ),
            updated_at=self.clock.now(),
        )
        write_or_fail(
            "replace_security_questions",
            lambda: self.store.replace_security_questions(question_set),
        )
        logger.info("security_questions_saved", user_id=user_id)
        if self.recorder:
            self.recorder.record(
                user_id,
                "security_questions_updated",
                "Security questions updated",
                status="success",
            )

    def questions(self, user_id: str) -> list[str]:
        """Stored question texts, in the order answers are expected."""
        stored = read_with_retry(
            "get_security_questions", lambda: self.store.get_security_questions(user_id)
        )
        if stored is None:
            return []
        return [entry.question for entry in stored.questions]

    def _matches(self, answer_hash: str, answer: str) -> bool:
        try:
            return self._hasher.verify(answer_hash, normalize_answer(answer))
        except (InvalidHash, VerificationError):
            return False

    def verify(self, user_id: str, answers: Sequence[str]) -> bool:
        if len(answers) != SECURITY_QUESTION_COUNT:
            raise ValidationError(
                f"exactly {SECURITY_QUESTION_COUNT} answers are required",
                detail={"received": len(answers)},
            )
        stored = read_with_retry(
            "get_security_questions", lambda: self.store.get_security_questions(user_id)
        )
        if stored is None:
            logger.info("security_questions_not_configured", user_id=user_id)
            return False
        # check every answer so the response does not reveal which one failed
        results = [
            self._matches(entry.answer_hash, str(answer or ""))
            for entry, answer in zip(stored.questions, answers)
        ]
        ok = all(results)
        if ok:
            logger.info("security_questions_verified", user_id=user_id)
        else:
            logger.warning("security_questions_mismatch", user_id=user_id)
        if self.recorder:
            self.recorder.record(
                user_id,
                "security_questions_verified" if ok else "security_questions_failed",
                "Security questions answered correctly"
                if ok
                else "Security questions answered incorrectly",
                status="success" if ok else "failure",
            )
        return ok


__all__ = ["RecoveryQuestionVault", "normalize_answer"]
