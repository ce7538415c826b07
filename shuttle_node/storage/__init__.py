"""Storage module for enrolled users and verification events."""

from .face_db import (
    FaceDatabase,
    EnrolledUser,
    VerificationOutcome,
    match_embedding,
    euclidean_distance,
    is_valid_embedding,
    EMBEDDING_DIM,
    MATCH_THRESHOLD,
)
from .user_store import UserStore, VerificationLog

__all__ = [
    "FaceDatabase",
    "EnrolledUser",
    "VerificationOutcome",
    "match_embedding",
    "euclidean_distance",
    "is_valid_embedding",
    "EMBEDDING_DIM",
    "MATCH_THRESHOLD",
    "UserStore",
    "VerificationLog",
]
