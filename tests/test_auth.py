import pytest
from fastapi import HTTPException
from jose import JWTError

from services.auth import create_access_token, identity_from_token, resolve_identity
from services.identity import Identity, PseudoIdStore
from shared.enums import UserRole


def test_token_round_trip():
    token = create_access_token({"sub": "prof", "role": "instructor", "name": "Professor"})
    identity = identity_from_token(token)
    assert identity == Identity(user_id="prof", display_name="Professor", role=UserRole.INSTRUCTOR)
    assert identity.is_instructor


def test_token_defaults_to_student():
    identity = identity_from_token(create_access_token({"sub": "alice"}))
    assert identity.role == UserRole.STUDENT
    assert identity.display_name == "alice"


def test_token_with_unknown_role_is_rejected():
    with pytest.raises(JWTError):
        identity_from_token(create_access_token({"sub": "eve", "role": "admin"}))


def test_resolve_identity_prefers_token():
    token = create_access_token({"sub": "alice"})
    assert resolve_identity(token, "anon_1").user_id == "alice"

    anonymous = resolve_identity(None, "anon_1", "Guest")
    assert anonymous.anonymous and anonymous.display_name == "Guest"

    with pytest.raises(HTTPException) as exc_info:
        resolve_identity("garbage", None)
    assert exc_info.value.status_code == 401
    with pytest.raises(HTTPException):
        resolve_identity(None, None)


def test_anonymous_instructor_claim_is_not_trusted():
    viewer = Identity(user_id="anon_2", role=UserRole.INSTRUCTOR, anonymous=True)
    assert not viewer.is_instructor


def test_pseudo_id_is_stable_until_reset(tmp_path):
    store = PseudoIdStore(tmp_path / "viewer" / "pseudo.json")
    first = store.get_or_create()
    assert first.startswith("anon_")
    assert PseudoIdStore(store.path).get_or_create() == first
    assert store.identity("Guest").user_id == first

    store.reset()
    assert store.get_or_create() != first


def test_unreadable_pseudo_id_file_is_replaced(tmp_path):
    path = tmp_path / "pseudo.json"
    path.write_text("{not json", encoding="utf-8")
    pseudo_id = PseudoIdStore(path).get_or_create()
    assert pseudo_id.startswith("anon_")
    assert PseudoIdStore(path).get_or_create() == pseudo_id
