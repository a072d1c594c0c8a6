import json
import os
import re
import stat

import pytest

from techstore_server.auth import AuthManager, generate_session_id
from techstore_server.models import SessionIdentity, User


def test_session_id_format() -> None:
    assert re.fullmatch(r"session_\d{13}_[a-z0-9]{9}", generate_session_id())
    assert generate_session_id() != generate_session_id()


def test_session_id_is_generated_once_and_persisted(session_file) -> None:
    manager = AuthManager(session_file=session_file)

    first = manager.get_or_create_session_id()
    second = manager.get_or_create_session_id()

    assert first == second
    assert AuthManager(session_file=session_file).get_or_create_session_id() == first


def test_session_file_is_private(session_file) -> None:
    AuthManager(session_file=session_file).get_or_create_session_id()

    assert stat.S_IMODE(os.stat(session_file).st_mode) == 0o600


def test_corrupted_session_file_starts_fresh(session_file) -> None:
    with open(session_file, "w") as f:
        f.write("{not json")

    manager = AuthManager(session_file=session_file)

    assert manager.session_id is None
    assert not manager.is_authenticated()


def test_session_with_inconsistent_cart_starts_fresh(session_file) -> None:
    with open(session_file, "w") as f:
        json.dump(
            {
                "session_id": "session_1_abc",
                "cart": {
                    "items": [{"product_id": "p1", "variant_id": "v1", "quantity": 1, "unit_price": "100"}],
                    "total_amount": "999",
                },
            },
            f,
        )

    manager = AuthManager(session_file=session_file)

    assert manager.load_cart() is None


def test_identity_switches_with_authentication(auth_manager) -> None:
    session_id = auth_manager.get_or_create_session_id()
    assert auth_manager.identity == SessionIdentity(session_id=session_id)

    auth_manager.save_auth("token-1", User(id="u1", email="alice@example.com"))
    assert auth_manager.identity.user_id == "u1"
    assert auth_manager.identity.is_authenticated

    auth_manager.clear_auth()
    assert auth_manager.identity.session_id == session_id


def test_identity_needs_exactly_one_key() -> None:
    with pytest.raises(ValueError):
        SessionIdentity()
    with pytest.raises(ValueError):
        SessionIdentity(user_id="u1", session_id="s1")


def test_token_without_user_is_not_authenticated(auth_manager) -> None:
    auth_manager.save_auth("token-guest")

    assert auth_manager.token == "token-guest"
    assert not auth_manager.is_authenticated()


def test_update_user_merges_fields(auth_manager, session_file) -> None:
    auth_manager.save_auth("token-1", User(id="u1", email="alice@example.com", loyalty_points=10))

    auth_manager.update_user(loyalty_points=25, full_name="Alice")

    reloaded = AuthManager(session_file=session_file)
    assert reloaded.user.loyalty_points == 25
    assert reloaded.user.full_name == "Alice"
    assert reloaded.is_authenticated()


def test_clear_session_removes_file(auth_manager, session_file) -> None:
    auth_manager.get_or_create_session_id()

    auth_manager.clear_session()

    assert not os.path.exists(session_file)
    assert auth_manager.session_id is None
