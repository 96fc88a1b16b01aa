"""
Matcher.

Turns a stream of probe vectors into authentication decisions.

Per frame, the probe is scored against every cached reference of the
current model version. Each identity keeps its best reference similarity;
the best identity then yields one vote:

    similarity >= accept_threshold                     vote for that identity
    review_threshold <= similarity < accept_threshold  vote "unknown"
    otherwise                                          no vote

An attempt moves through explicit states:

    IDLE -> SAMPLING -> DECIDING -> DONE -> (cool-down) -> IDLE

SAMPLING starts on the first accepted frame and keeps the current streak of
consecutive votes. A frame without a vote casts nothing and breaks the
streak, but the attempt keeps sampling. Once the streak holds K votes the
attempt is DECIDING: K votes for the same identity allow it; any other mix
of K votes is a review. If the window W (measured from the first sample)
runs out first, the attempt is a review when any vote was cast and a deny
when none was. DONE holds until the cool-down elapses so one continuous
presence produces one decision.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np

from .config import MatcherConfig
from .schemas.cache_schemas import CacheSnapshot
from .schemas.decision_schemas import AuthMode, Decision, DecisionRecord

logger = logging.getLogger(__name__)

UNKNOWN_VOTE = "__unknown__"

REASON_CONSENSUS = "consensus"
REASON_NO_CONSENSUS = "no_consensus"
REASON_REVIEW_BAND = "review_band"
REASON_WINDOW_EXPIRED = "window_expired"
REASON_NO_MATCH = "no_match"


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity of two vectors, in [-1, 1].

    Raises:
        ValueError: On shape mismatch or a zero vector
    """
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if a.shape != b.shape:
        raise ValueError(f"shape mismatch: {a.shape} vs {b.shape}")
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        raise ValueError("zero vector")
    return float(np.clip(np.dot(a, b) / denom, -1.0, 1.0))


def rank_identities(
    probe: np.ndarray,
    snapshot: CacheSnapshot,
    model_version: str,
) -> List[Tuple[str, float]]:
    """
    Best-reference similarity per identity, highest first.

    The probe must be unit-norm; references are unit-norm, so similarity
    is a dot product.
    """
    owners, matrix = snapshot.matrix(model_version)
    if not owners:
        return []
    if matrix.shape[1] != probe.shape[0]:
        logger.warning(
            f"Probe has {probe.shape[0]} dims, cache holds {matrix.shape[1]} "
            f"for {model_version}; no candidates"
        )
        return []

    sims = np.clip(matrix @ probe.astype(np.float32), -1.0, 1.0)
    best = {}
    for identity_id, sim in zip(owners, sims.tolist()):
        if sim > best.get(identity_id, -2.0):
            best[identity_id] = sim
    return sorted(best.items(), key=lambda item: item[1], reverse=True)


class MatcherState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    DECIDING = "deciding"
    DONE = "done"


@dataclass(frozen=True)
class Sample:
    """One frame's contribution to an attempt."""
    vote: Optional[str]            # identity_id, UNKNOWN_VOTE or None
    similarity: Optional[float]    # best similarity seen in this frame
    captured_at: datetime


class Matcher:
    """
    Consensus state machine over probe vectors.

    Not thread-safe; owned by the capture loop.

    Usage:
        matcher = Matcher(config.matcher, cache, model_version="sface-2021dec",
                          device_id=..., location_id=...)
        record = matcher.submit(vector, frame.captured_at)
        if record is None:
            record = matcher.poll()
    """

    def __init__(
        self,
        config: MatcherConfig,
        cache,
        model_version: str,
        device_id: Optional[str] = None,
        location_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize matcher.

        Args:
            config: Thresholds, K, W, cool-down and auth mode
            cache: Anything with a .snapshot property (EmbeddingCache)
            model_version: Embedding model tag of the probes
            device_id: Carried into decision records
            location_id: Carried into decision records
            clock: Monotonic clock in seconds, injectable for tests
        """
        self.config = config
        self.cache = cache
        self.model_version = model_version
        self.device_id = device_id
        self.location_id = location_id
        self.clock = clock
        self.mode = AuthMode(config.mode)

        self.state = MatcherState.IDLE
        self._samples: List[Sample] = []
        self._streak: List[Sample] = []
        self._started_at: Optional[float] = None
        self._done_at: Optional[float] = None

        self.stats = {
            "samples": 0,
            "samples_in_cooldown": 0,
            "attempts_completed": 0,
            "attempts_discarded": 0,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    def submit(
        self,
        probe: np.ndarray,
        captured_at: datetime,
        captured_monotonic: Optional[float] = None,
    ) -> Optional[DecisionRecord]:
        """
        Add one probe vector (one per accepted frame).

        Args:
            probe: Unit-norm embedding
            captured_at: Wall-clock capture time of the frame
            captured_monotonic: Monotonic capture time, defaults to now

        Returns:
            The decision record if this sample completed the attempt
        """
        now = self.clock()

        # An attempt whose window ran out resolves before the new sample.
        expired = self.poll(now)
        if expired is not None:
            return expired

        if self.state == MatcherState.DONE:
            if now - self._done_at < self.config.cooldown_seconds:
                self.stats["samples_in_cooldown"] += 1
                return None
            self.state = MatcherState.IDLE

        if self.state == MatcherState.IDLE:
            self.state = MatcherState.SAMPLING
            self._samples = []
            self._streak = []
            start = captured_monotonic if captured_monotonic is not None else now
            self._started_at = min(start, now)

        sample = self._sample(probe, captured_at)
        self._samples.append(sample)
        self.stats["samples"] += 1

        if sample.vote is None:
            self._streak = []
            return None
        self._streak.append(sample)

        if len(self._streak) >= self.config.consensus_k:
            self.state = MatcherState.DECIDING
            return self._decide(now, window_expired=False)
        return None

    def poll(self, now: Optional[float] = None) -> Optional[DecisionRecord]:
        """
        Resolve an attempt whose window has elapsed.

        Call periodically so an attempt completes even when no further
        frames are accepted.
        """
        if self.state != MatcherState.SAMPLING:
            return None
        now = self.clock() if now is None else now
        if now - self._started_at <= self.config.window_seconds:
            return None
        self.state = MatcherState.DECIDING
        return self._decide(now, window_expired=True)

    def reset(self) -> None:
        """Discard any attempt in progress (shutdown or camera loss)."""
        if self.state == MatcherState.SAMPLING:
            self.stats["attempts_discarded"] += 1
            logger.info(f"Discarding attempt with {len(self._samples)} samples")
        self.state = MatcherState.IDLE
        self._samples = []
        self._streak = []
        self._started_at = None

    # =========================================================================
    # Internal
    # =========================================================================

    def _sample(self, probe: np.ndarray, captured_at: datetime) -> Sample:
        ranked = rank_identities(probe, self.cache.snapshot, self.model_version)
        if not ranked:
            return Sample(vote=None, similarity=None, captured_at=captured_at)

        identity_id, similarity = ranked[0]
        if similarity >= self.config.accept_threshold:
            vote = identity_id
        elif similarity >= self.config.review_threshold:
            vote = UNKNOWN_VOTE
        else:
            vote = None
        return Sample(vote=vote, similarity=similarity, captured_at=captured_at)

    def _decide(self, now: float, window_expired: bool) -> DecisionRecord:
        samples = self._samples
        streak = [s.vote for s in self._streak]
        votes = [s.vote for s in samples if s.vote is not None]
        observed = [s.similarity for s in samples if s.similarity is not None]
        highest = max(observed) if observed else None

        identity_id = None
        similarity = highest

        if (not window_expired and len(streak) >= self.config.consensus_k
                and streak[0] != UNKNOWN_VOTE and all(v == streak[0] for v in streak)):
            decision = Decision.ALLOW
            identity_id = streak[0]
            similarity = float(np.mean([s.similarity for s in self._streak]))
            reason = REASON_CONSENSUS
        elif votes:
            decision = Decision.REVIEW
            if window_expired:
                reason = REASON_WINDOW_EXPIRED
            elif all(v == UNKNOWN_VOTE for v in streak):
                reason = REASON_REVIEW_BAND
            else:
                reason = REASON_NO_CONSENSUS
        else:
            decision = Decision.DENY
            reason = REASON_NO_MATCH

        if similarity is not None:
            similarity = max(-1.0, min(1.0, similarity))

        record = DecisionRecord(
            captured_at=samples[-1].captured_at,
            identity_id=identity_id,
            similarity=similarity,
            decision=decision,
            mode=self.mode,
            model_version=self.model_version,
            latency_ms=max(0, int(round((now - self._started_at) * 1000))),
            reason=reason,
            device_id=self.device_id,
            location_id=self.location_id,
        )

        self.state = MatcherState.DONE
        self._done_at = now
        self._samples = []
        self._streak = []
        self._started_at = None
        self.stats["attempts_completed"] += 1

        logger.debug(
            f"Attempt resolved: {decision.value} ({reason}) after {len(samples)} samples"
        )
        return record
