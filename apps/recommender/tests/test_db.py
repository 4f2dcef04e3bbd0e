# apps/recommender/tests/test_db.py
import uuid

import pytest

from db import transaction
from models import User


def test_transaction_commits_on_success(session_factory, db):
    user_id = uuid.uuid4()
    with transaction(session_factory) as s:
        s.add(User(id=user_id, username="bob", is_enabled=True))

    assert db.get(User, user_id) is not None


def test_transaction_rolls_back_and_reraises(session_factory, db):
    user_id = uuid.uuid4()
    with pytest.raises(RuntimeError):
        with transaction(session_factory) as s:
            s.add(User(id=user_id, username="carol", is_enabled=True))
            s.flush()
            raise RuntimeError("boom")

    assert db.get(User, user_id) is None
