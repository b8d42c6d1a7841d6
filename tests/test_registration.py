from __future__ import annotations

import pytest

from userauth.errors import AlreadyExists, AlreadyRegistered, InvalidIdentity, NotFound
from userauth.fsm import State
from userauth.models import UserAuth
from userauth.registration import VALID_USER_NAME, UserRegistration


def _register(backend, tables, **fields) -> UserRegistration:
    with UserRegistration(UserAuth(**fields), backend, tables) as registration:
        registration.register()
    return registration


def _stored(backend, tables, user_auth_id: int):
    return backend.get(tables.user_auth_table, {tables.fields.id: user_auth_id})


def test_register_persists_record_and_both_indexes(backend, tables, index_rows) -> None:
    registration = _register(backend, tables, id=1, user_name="tomtom", email="User1@Example.org")

    assert registration.registered is True
    assert registration.state == State.unregistered  # disposed
    assert _stored(backend, tables, 1)["Email"] == "User1@Example.org"
    assert index_rows("username") == {"tomtom": 1}
    assert index_rows("email") == {"user1@example.org": 1}


@pytest.mark.parametrize(
    "fields,reason",
    [
        ({"id": 1}, "UserName or Email is required"),
        ({"id": 1, "user_name": " ", "email": ""}, "UserName or Email is required"),
        ({"id": 1, "user_name": "to"}, "UserName contains invalid characters"),
        ({"id": 1, "user_name": "tom..tom"}, "UserName contains invalid characters"),
        ({"id": 1, "user_name": "tom@home"}, "UserName contains invalid characters"),
        ({"id": 1, "user_name": "tom\n"}, "UserName contains invalid characters"),
        ({"id": 1, "user_name": "to m"}, "UserName contains invalid characters"),
        ({"id": 1, "email": "not-an-email"}, "Email is not a valid email address"),
    ],
)
def test_invalid_identity_is_rejected_before_any_write(backend, tables, index_rows, fields, reason) -> None:
    with pytest.raises(InvalidIdentity) as exc:
        _register(backend, tables, **fields)

    assert exc.value.reason == reason
    assert _stored(backend, tables, 1) is None
    assert index_rows("username") == {}
    assert index_rows("email") == {}


def test_user_name_pattern() -> None:
    assert VALID_USER_NAME.fullmatch("tom")
    assert VALID_USER_NAME.fullmatch("tom.tom-1_x")
    assert not VALID_USER_NAME.fullmatch("a" * 16)
    assert not VALID_USER_NAME.fullmatch("tom tom")
    assert not VALID_USER_NAME.fullmatch("tom\n")


def test_validation_precheck_rejects_taken_identifier(backend, tables, index_rows) -> None:
    _register(backend, tables, id=2, user_name="tom")

    with pytest.raises(AlreadyExists):
        _register(backend, tables, id=3, user_name="Tom")

    assert _stored(backend, tables, 3) is None
    assert index_rows("username") == {"tom": 2}


def test_race_on_email_reservation_compensates_user_name(backend, tables, index_rows, monkeypatch) -> None:
    _register(backend, tables, id=1, email="taken@example.org")

    # Another session claimed the email after this session validated.
    monkeypatch.setattr(UserRegistration, "_ensure_available", lambda self, index, identifier: None)
    with pytest.raises(AlreadyExists):
        _register(backend, tables, id=2, user_name="fresh", email="taken@example.org")

    assert "fresh" not in index_rows("username")
    assert index_rows("email") == {"taken@example.org": 1}
    assert _stored(backend, tables, 2) is None


def test_record_collision_raises_already_registered_and_releases(backend, tables, index_rows) -> None:
    _register(backend, tables, id=1, user_name="first")

    with pytest.raises(AlreadyRegistered):
        _register(backend, tables, id=1, user_name="second", email="second@example.org")

    assert index_rows("username") == {"first": 1}
    assert index_rows("email") == {}
    assert _stored(backend, tables, 1)["UserName"] == "first"


def test_failed_record_write_releases_both_reservations(failing_backend, backend, tables, index_rows) -> None:
    failing_backend.fail_on.add(("conditional_put", tables.user_auth_table))

    with pytest.raises(RuntimeError):
        _register(failing_backend, tables, id=5, user_name="tom", email="tom@example.org")

    assert index_rows("username") == {}
    assert index_rows("email") == {}


def test_compensation_failure_keeps_original_error(failing_backend, tables, index_rows) -> None:
    failing_backend.fail_on.add(("conditional_put", tables.user_auth_table))
    failing_backend.fail_on.add(("delete", tables.user_name_mapping_table))

    with pytest.raises(RuntimeError, match="conditional_put"):
        _register(failing_backend, tables, id=5, user_name="tom", email="tom@example.org")

    # Username row is orphaned; email row was released.
    assert index_rows("username") == {"tom": 5}
    assert index_rows("email") == {}


def test_update_renames_identifiers_after_persisting(backend, tables, index_rows) -> None:
    _register(backend, tables, id=1, email="user1@example.org")

    with UserRegistration(UserAuth(id=1, user_name="tomtom", email="user1a@example.org"), backend, tables) as r:
        r.update()
        assert r.registered_user_auth.email == "user1a@example.org"

    assert index_rows("email") == {"user1a@example.org": 1}
    assert index_rows("username") == {"tomtom": 1}
    assert _stored(backend, tables, 1)["UserName"] == "tomtom"


def test_update_case_only_change_keeps_index_row(failing_backend, backend, tables, index_rows) -> None:
    _register(backend, tables, id=1, email="user1@example.org")
    failing_backend.calls.clear()

    with UserRegistration(UserAuth(id=1, email="USER1@example.org"), failing_backend, tables) as r:
        r.update()

    assert index_rows("email") == {"user1@example.org": 1}
    assert ("delete", tables.email_mapping_table) not in failing_backend.calls
    assert ("conditional_put", tables.email_mapping_table) not in failing_backend.calls


def test_update_collision_leaves_everything_untouched(backend, tables, index_rows) -> None:
    _register(backend, tables, id=1, user_name="alice")
    _register(backend, tables, id=2, user_name="bob")

    with pytest.raises(AlreadyExists):
        with UserRegistration(UserAuth(id=2, user_name="alice"), backend, tables) as r:
            r.update()

    assert index_rows("username") == {"alice": 1, "bob": 2}
    assert _stored(backend, tables, 2)["UserName"] == "bob"


def test_update_failure_releases_new_and_keeps_old(failing_backend, backend, tables, index_rows) -> None:
    _register(backend, tables, id=1, user_name="alice")
    failing_backend.fail_on.add(("conditional_put", tables.user_auth_table))

    with pytest.raises(RuntimeError):
        with UserRegistration(UserAuth(id=1, user_name="alicia"), failing_backend, tables) as r:
            r.update()

    assert index_rows("username") == {"alice": 1}
    assert _stored(backend, tables, 1)["UserName"] == "alice"


def test_update_of_missing_record_raises_not_found(backend, tables, index_rows) -> None:
    with pytest.raises(NotFound):
        with UserRegistration(UserAuth(id=42, user_name="ghost"), backend, tables) as r:
            r.update()

    assert index_rows("username") == {}


def test_update_when_record_vanishes_mid_session(backend, tables, index_rows) -> None:
    _register(backend, tables, id=1, user_name="alice")

    with pytest.raises(NotFound):
        with UserRegistration(UserAuth(id=1, user_name="alicia"), backend, tables) as r:
            r.restore()
            # Concurrently removed by another session.
            backend.delete(tables.user_auth_table, {"Id": 1})
            r.update()

    assert "alicia" not in index_rows("username")


def test_remove_deletes_record_then_indexes(backend, tables, index_rows) -> None:
    _register(backend, tables, id=1, user_name="tom", email="tom@example.org")

    with UserRegistration(UserAuth(id=1), backend, tables) as r:
        r.remove()
        assert r.state == State.removed
        assert r.registered is False

    assert _stored(backend, tables, 1) is None
    assert index_rows("username") == {}
    assert index_rows("email") == {}


def test_remove_missing_record_raises_not_found(backend, tables) -> None:
    with pytest.raises(NotFound):
        with UserRegistration(UserAuth(id=9), backend, tables) as r:
            r.remove()


def test_failed_record_delete_keeps_indexes(failing_backend, backend, tables, index_rows) -> None:
    _register(backend, tables, id=1, user_name="tom")
    failing_backend.fail_on.add(("delete", tables.user_auth_table))

    with pytest.raises(RuntimeError):
        with UserRegistration(UserAuth(id=1), failing_backend, tables) as r:
            r.remove()

    assert _stored(backend, tables, 1) is not None
    assert index_rows("username") == {"tom": 1}


def test_one_session_can_register_update_and_remove(backend, tables, index_rows) -> None:
    user = UserAuth(id=2, email="user2@example.org")
    with UserRegistration(user, backend, tables) as r:
        r.register()
        user.user_name = "second"
        r.update()
        assert index_rows("username") == {"second": 2}
        r.remove()

    assert index_rows("username") == {}
    assert index_rows("email") == {}


def test_dispose_releases_uncommitted_reservations(backend, tables, index_rows) -> None:
    r = UserRegistration(UserAuth(id=7, user_name="pending"), backend, tables)
    r.user_name_mapped = r.indexes.user_name.reserve("pending", 7)
    assert index_rows("username") == {"pending": 7}

    r.dispose()

    assert index_rows("username") == {}
    assert r.user_name_mapped is False
    assert r.state == State.unregistered
