"""
Face Database - in-memory population of enrolled embeddings.
Matches a probe embedding against the cached population by Euclidean distance.
"""

import math
import threading
from dataclasses import dataclass
from typing import Optional, Sequence
import logging

import numpy as np


logger = logging.getLogger(__name__)


EMBEDDING_DIM = 128
MATCH_THRESHOLD = 0.6

REASON_INVALID_LENGTH = "invalid embedding length"
REASON_INVALID_VALUES = "invalid embedding values"
REASON_NO_USERS = "no users registered"


@dataclass(frozen=True)
class EnrolledUser:
    """An enrolled user and their face embedding."""
    user_id: str
    embedding: np.ndarray


@dataclass
class VerificationOutcome:
    """Result of matching one probe embedding."""
    verified: bool
    matched_user_id: Optional[str] = None
    distance: Optional[float] = None
    reason: Optional[str] = None


def is_valid_embedding(embedding, dimension: int = EMBEDDING_DIM) -> bool:
    """Check that an embedding has exactly `dimension` finite values."""
    try:
        vec = np.asarray(embedding, dtype=np.float64)
    except (TypeError, ValueError):
        return False
    return vec.ndim == 1 and vec.shape[0] == dimension and bool(np.all(np.isfinite(vec)))


def euclidean_distance(emb1, emb2) -> float:
    """
    Compute Euclidean distance between two embeddings.

    Returns:
        Distance (0 = identical, lower = more similar)
    """
    a = np.asarray(emb1, dtype=np.float64)
    b = np.asarray(emb2, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Embedding length mismatch: {a.shape[0]} vs {b.shape[0]}")
    return float(math.sqrt(float(np.sum((a - b) ** 2))))


def match_embedding(
    embedding,
    population: Sequence[EnrolledUser],
    threshold: float = MATCH_THRESHOLD,
    dimension: int = EMBEDDING_DIM,
) -> VerificationOutcome:
    """
    Find the enrolled user closest to the probe embedding.

    Linear scan over the population; ties go to the earliest user
    in population order. Users with a malformed embedding are skipped.
    Never raises.

    Args:
        embedding: Probe embedding (128 floats)
        population: Enrolled users in insertion order
        threshold: Verified when the minimum distance is strictly below this

    Returns:
        VerificationOutcome
    """
    try:
        probe = np.asarray(embedding, dtype=np.float64)
    except (TypeError, ValueError):
        return VerificationOutcome(verified=False, reason=REASON_INVALID_LENGTH)

    if probe.ndim != 1 or probe.shape[0] != dimension:
        logger.warning(f"Invalid embedding length: {probe.size}")
        return VerificationOutcome(verified=False, reason=REASON_INVALID_LENGTH)

    if not np.all(np.isfinite(probe)):
        return VerificationOutcome(verified=False, reason=REASON_INVALID_VALUES)

    best_user: Optional[EnrolledUser] = None
    best_distance = math.inf

    for user in population:
        if not is_valid_embedding(user.embedding, dimension):
            logger.debug(f"Skipping malformed record: {user.user_id!r}")
            continue
        distance = euclidean_distance(probe, user.embedding)
        if distance < best_distance:
            best_distance = distance
            best_user = user

    if best_user is None:
        return VerificationOutcome(verified=False, reason=REASON_NO_USERS)

    if best_distance < threshold:
        return VerificationOutcome(
            verified=True,
            matched_user_id=best_user.user_id,
            distance=best_distance,
        )

    return VerificationOutcome(
        verified=False,
        distance=best_distance,
        reason=f"No match found (closest: {best_user.user_id} {best_distance:.2f})",
    )


class FaceDatabase:
    """
    Read-only snapshot of the enrolled population.
    Refreshed on demand from a user-record provider (anything with list_users()).
    """

    def __init__(
        self,
        threshold: float = MATCH_THRESHOLD,
        dimension: int = EMBEDDING_DIM,
    ):
        self.threshold = threshold
        self.dim = dimension

        self._lock = threading.Lock()
        self._population: tuple[EnrolledUser, ...] = ()
        self._rejected = 0
        self._refresh_count = 0

    def refresh(self, provider) -> int:
        """
        Re-fetch users from the provider, replacing the snapshot.
        Records with an empty id or a malformed embedding are excluded.

        Returns:
            Number of users in the new snapshot
        """
        users = provider.list_users()

        valid = []
        rejected = 0
        for user in users:
            if not user.user_id or not is_valid_embedding(user.embedding, self.dim):
                logger.warning(f"Skipping invalid enrolled record: {user.user_id!r}")
                rejected += 1
                continue
            valid.append(EnrolledUser(
                user_id=user.user_id,
                embedding=np.asarray(user.embedding, dtype=np.float64),
            ))

        with self._lock:
            self._population = tuple(valid)
            self._rejected = rejected
            self._refresh_count += 1

        logger.info(f"Loaded {len(valid)} users from database ({rejected} rejected)")
        return len(valid)

    def snapshot(self) -> tuple[EnrolledUser, ...]:
        """Get the current population snapshot."""
        with self._lock:
            return self._population

    def match(self, embedding) -> VerificationOutcome:
        """Match a probe against the current snapshot."""
        return match_embedding(
            embedding,
            self.snapshot(),
            threshold=self.threshold,
            dimension=self.dim,
        )

    def count(self) -> int:
        """Return the number of users in the snapshot."""
        with self._lock:
            return len(self._population)

    def get_stats(self) -> dict:
        """Get database statistics."""
        with self._lock:
            return {
                "total_users": len(self._population),
                "rejected_records": self._rejected,
                "refresh_count": self._refresh_count,
                "threshold": self.threshold,
            }
