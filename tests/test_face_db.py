import math

import numpy as np
import pytest

from shuttle_node.storage import (
    FaceDatabase,
    EnrolledUser,
    match_embedding,
    euclidean_distance,
    is_valid_embedding,
)
from shuttle_node.storage.face_db import (
    REASON_INVALID_LENGTH,
    REASON_INVALID_VALUES,
    REASON_NO_USERS,
)


class TestEuclideanDistance:

    def test_identical_is_zero(self, make_embedding):
        emb = make_embedding(0.1, 0.2, 0.3)
        assert euclidean_distance(emb, emb) == 0.0

    def test_known_distance(self, make_embedding):
        assert euclidean_distance(make_embedding(3.0), make_embedding(0.0, 4.0)) == pytest.approx(5.0)

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            euclidean_distance([1.0, 2.0], [1.0])


class TestValidEmbedding:

    def test_valid(self, make_embedding):
        assert is_valid_embedding(make_embedding(1.0))

    def test_wrong_length(self):
        assert not is_valid_embedding([0.0] * 127)

    def test_non_finite(self, make_embedding):
        assert not is_valid_embedding(make_embedding(float("nan")))
        assert not is_valid_embedding(make_embedding(float("inf")))

    def test_not_numeric(self):
        assert not is_valid_embedding(["a"] * 128)


class TestMatchEmbedding:

    def test_exact_match_verifies(self, make_user, make_embedding):
        population = [make_user("alice", 0.5, 0.5)]

        outcome = match_embedding(make_embedding(0.5, 0.5), population)

        assert outcome.verified
        assert outcome.matched_user_id == "alice"
        assert outcome.distance == 0.0
        assert outcome.reason is None

    def test_distance_above_threshold_reports_closest(self, make_user, make_embedding):
        population = [make_user("alice")]

        outcome = match_embedding(make_embedding(0.8), population)

        assert not outcome.verified
        assert outcome.matched_user_id is None
        assert outcome.distance == pytest.approx(0.8)
        assert outcome.reason == "No match found (closest: alice 0.80)"

    def test_threshold_is_strict(self, make_user, make_embedding):
        population = [make_user("alice")]

        outcome = match_embedding(make_embedding(0.5), population, threshold=0.5)

        assert not outcome.verified
        assert outcome.distance == 0.5

    def test_closest_user_wins(self, make_user, make_embedding):
        population = [
            make_user("alice", 1.0),
            make_user("bob", 0.1),
            make_user("carol", 2.0),
        ]

        outcome = match_embedding(make_embedding(0.0), population)

        assert outcome.verified
        assert outcome.matched_user_id == "bob"
        assert outcome.distance == pytest.approx(0.1)

    def test_tie_goes_to_first_user(self, make_user, make_embedding):
        population = [make_user("first", 0.2), make_user("second", 0.2)]

        outcome = match_embedding(make_embedding(0.2), population)

        assert outcome.matched_user_id == "first"

    def test_invalid_length(self, make_user):
        outcome = match_embedding([0.0] * 127, [make_user("alice")])

        assert not outcome.verified
        assert outcome.reason == REASON_INVALID_LENGTH

    def test_non_array_probe(self, make_user):
        outcome = match_embedding(object(), [make_user("alice")])

        assert not outcome.verified
        assert outcome.reason == REASON_INVALID_LENGTH

    def test_invalid_values(self, make_user, make_embedding):
        outcome = match_embedding(make_embedding(math.nan), [make_user("alice")])

        assert not outcome.verified
        assert outcome.reason == REASON_INVALID_VALUES

    def test_empty_population(self, make_embedding):
        outcome = match_embedding(make_embedding(0.1), [])

        assert not outcome.verified
        assert outcome.reason == REASON_NO_USERS
        assert outcome.distance is None

    def test_malformed_records_skipped(self):
        population = [
            EnrolledUser(user_id="short", embedding=np.zeros(64)),
            EnrolledUser(user_id="alice", embedding=np.zeros(128)),
        ]

        outcome = match_embedding(np.zeros(128), population)

        assert outcome.verified
        assert outcome.matched_user_id == "alice"
        assert outcome.distance == 0.0

    def test_only_malformed_records(self):
        population = [
            EnrolledUser(user_id="short", embedding=np.zeros(64)),
            EnrolledUser(user_id="nan", embedding=np.full(128, np.nan)),
        ]

        outcome = match_embedding(np.zeros(128), population)

        assert not outcome.verified
        assert outcome.reason == REASON_NO_USERS


class TestFaceDatabase:

    def setup_method(self):
        self.db = FaceDatabase()

    def test_empty_until_refreshed(self, make_embedding):
        assert self.db.count() == 0
        assert self.db.match(make_embedding()).reason == REASON_NO_USERS

    def test_refresh_loads_population(self, provider_factory, make_user, make_embedding):
        count = self.db.refresh(provider_factory([make_user("alice"), make_user("bob", 1.0)]))

        assert count == 2
        assert [u.user_id for u in self.db.snapshot()] == ["alice", "bob"]
        assert self.db.match(make_embedding(0.95)).matched_user_id == "bob"

    def test_refresh_excludes_invalid_records(self, provider_factory, make_user):
        users = [
            make_user("alice"),
            EnrolledUser(user_id="short", embedding=np.zeros(10)),
            EnrolledUser(user_id="", embedding=np.zeros(128)),
            EnrolledUser(user_id="nan", embedding=np.full(128, np.nan)),
        ]

        assert self.db.refresh(provider_factory(users)) == 1
        stats = self.db.get_stats()
        assert stats["total_users"] == 1
        assert stats["rejected_records"] == 3

    def test_refresh_replaces_snapshot(self, provider_factory, make_user):
        self.db.refresh(provider_factory([make_user("alice")]))
        before = self.db.snapshot()

        self.db.refresh(provider_factory([make_user("bob")]))

        assert [u.user_id for u in before] == ["alice"]
        assert [u.user_id for u in self.db.snapshot()] == ["bob"]
        assert self.db.get_stats()["refresh_count"] == 2

    def test_custom_threshold(self, provider_factory, make_user, make_embedding):
        db = FaceDatabase(threshold=1.0)
        db.refresh(provider_factory([make_user("alice")]))

        assert db.match(make_embedding(0.8)).verified
