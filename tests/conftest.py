import logging

import numpy as np
import pytest

from shuttle_node.storage import EnrolledUser, EMBEDDING_DIM


@pytest.fixture
def logger():
    return logging.getLogger("tests")


@pytest.fixture
def make_embedding():
    """Embedding of zeros with the given leading values."""
    def _make(*head, dim=EMBEDDING_DIM):
        vec = np.zeros(dim, dtype=np.float64)
        vec[:len(head)] = head
        return vec
    return _make


@pytest.fixture
def make_user(make_embedding):
    def _make(user_id, *head):
        return EnrolledUser(user_id=user_id, embedding=make_embedding(*head))
    return _make


@pytest.fixture
def frame():
    """Blank 1000x800 BGR frame."""
    return np.zeros((800, 1000, 3), dtype=np.uint8)


class FakeProvider:
    def __init__(self, users):
        self.users = list(users)

    def list_users(self):
        return list(self.users)


@pytest.fixture
def provider_factory():
    return FakeProvider
