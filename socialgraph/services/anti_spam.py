import logging
import re

from pydantic import ValidationError as ModelValidationError

from socialgraph.errors import StoreUnavailable
from socialgraph.models.spam import (
    SpamCheckAction,
    SpamCheckKind,
    SpamCheckResult,
    SpamReason,
    SpamScore,
    SuggestedAction,
)
from socialgraph.services.kv_store import KeyValueStore
from socialgraph.utils.clock import Clock, SystemClock
from socialgraph.utils.locks import ShardedRWLock

logger = logging.getLogger(__name__)

# TODO: Load banned terms from moderation config once it is managed remotely.
BANNED_TERMS = frozenset({"spam", "bot", "fake"})
LINK_PATTERN = re.compile(r"https?://|www\.")

MAX_LINKS = 2
REPETITION_MIN_WORDS = 10
REPETITION_MIN_UNIQUE_RATIO = 0.3

CLEAN = SpamCheckResult(is_spam=False, confidence=0.1)


class AntiSpamEngine:
    """Heuristic spam scoring for follows and user-written content.

    Follow checks look at the acting user's accumulated spam score; content
    checks run banned-term, link-count and repetition heuristics in that
    order and stop at the first hit. Scores are persisted in a
    ``KeyValueStore`` and only grow through reports.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock | None = None,
        follow_threshold: float = 50.0,
        report_penalty: float = 10.0,
        shards: int = 32,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self.follow_threshold = follow_threshold
        self.report_penalty = report_penalty
        self._locks = ShardedRWLock(shards)

    @staticmethod
    def _key(user_id: str) -> str:
        return f"spam_score:{user_id}"

    async def check_for_spam(self, user_id: str, action: SpamCheckAction) -> SpamCheckResult:
        try:
            if action.kind == SpamCheckKind.FOLLOW:
                return await self._check_follow(user_id)
        except StoreUnavailable:
            logger.exception("Spam score store unavailable; denying %s by %s", action.kind.value, user_id)
            return SpamCheckResult(
                is_spam=True,
                confidence=1.0,
                reason="Spam check unavailable",
                suggested_action=SuggestedAction.RATE_LIMIT,
            )
        if action.kind in (SpamCheckKind.MESSAGE, SpamCheckKind.PROFILE_UPDATE):
            return self.check_content(action.content)
        # Workout posts have no heuristics yet.
        return CLEAN

    async def _check_follow(self, user_id: str) -> SpamCheckResult:
        score = await self.get_spam_score(user_id)
        if score > self.follow_threshold:
            logger.info("Follow by %s flagged, spam score %.1f", user_id, score)
            return SpamCheckResult(
                is_spam=True,
                confidence=0.9,
                reason="High spam score detected",
                suggested_action=SuggestedAction.RATE_LIMIT,
            )
        return CLEAN

    @staticmethod
    def check_content(content: str) -> SpamCheckResult:
        lowered = content.lower()

        if any(term in lowered for term in BANNED_TERMS):
            return SpamCheckResult(
                is_spam=True,
                confidence=0.8,
                reason="Inappropriate content detected",
                suggested_action=SuggestedAction.WARN,
            )

        if len(LINK_PATTERN.findall(lowered)) > MAX_LINKS:
            return SpamCheckResult(
                is_spam=True,
                confidence=0.7,
                reason="Too many links detected",
                suggested_action=SuggestedAction.WARN,
            )

        words = lowered.split()
        if (
            len(words) > REPETITION_MIN_WORDS
            and len(set(words)) / len(words) < REPETITION_MIN_UNIQUE_RATIO
        ):
            return SpamCheckResult(
                is_spam=True,
                confidence=0.6,
                reason="Repetitive content detected",
                suggested_action=SuggestedAction.WARN,
            )

        return CLEAN

    async def _load(self, user_id: str) -> SpamScore:
        raw = await self._store.get(self._key(user_id))
        if raw is None:
            return SpamScore(user_id=user_id)
        try:
            return SpamScore.model_validate(raw)
        except ModelValidationError:
            logger.warning("Ignoring malformed spam score for %s", user_id)
            return SpamScore(user_id=user_id)

    async def get_spam_score(self, user_id: str) -> float:
        async with self._locks.for_key(user_id).read():
            return (await self._load(user_id)).score

    async def report_spam(self, user_id: str, target_id: str, reason: SpamReason) -> float:
        """Penalize ``target_id`` for a report filed by ``user_id``.

        Returns:
            The target's new score
        """
        score = await self._apply_penalty(target_id, self.report_penalty)
        logger.info(
            "Spam report by %s against %s (%s), score now %.1f",
            user_id,
            target_id,
            reason.value,
            score,
        )
        return score

    async def _apply_penalty(self, user_id: str, delta: float) -> float:
        async with self._locks.for_key(user_id).write():
            current = await self._load(user_id)
            updated = SpamScore(
                user_id=user_id,
                score=max(0.0, current.score + delta),
                last_updated=self._clock.now(),
            )
            await self._store.set(self._key(user_id), updated.model_dump(mode="json"))
        return updated.score

    async def reset_spam_score(self, user_id: str) -> None:
        async with self._locks.for_key(user_id).write():
            await self._store.delete(self._key(user_id))
