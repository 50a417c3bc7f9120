import pytest

from auth import hash_password, verify_password
from errors import (
    InvariantGuardError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from models import Role


def test_login(lib):
    user = lib.login("admin", "123")
    assert user is not None
    assert user.role == Role.ADMIN
    assert lib.login("admin", "wrong") is None
    assert lib.login("nobody", "123") is None
    assert lib.login("", "") is None


def test_passwords_are_hashed(lib, admin):
    assert admin.password_hash != "123"
    assert admin.password_hash.startswith("$2")
    assert "password_hash" not in admin.to_dict()


def test_hash_helpers():
    hashed = hash_password("s3cret")
    assert verify_password("s3cret", hashed)
    assert not verify_password("other", hashed)
    assert not verify_password("s3cret", "not-a-bcrypt-hash")
    with pytest.raises(ValidationError):
        hash_password("")
    with pytest.raises(ValidationError):
        hash_password("x" * 73)


def test_register_creates_reader(lib):
    user = lib.register("Ada Lovelace", "ada", "engine")
    assert user.role == Role.USER
    assert "ui-avatars.com" in user.avatar
    assert lib.login("ada", "engine").id == user.id


@pytest.mark.parametrize("full_name,username,password", [
    ("", "ada", "pw"),
    ("Ada", "a", "pw"),
    ("Ada", "has space", "pw"),
    ("Ada", "ada", ""),
])
def test_register_validation(lib, full_name, username, password):
    with pytest.raises(ValidationError):
        lib.register(full_name, username, password)


def test_duplicate_username(lib):
    with pytest.raises(StateConflictError):
        lib.register("Another Admin", "admin", "pw")


def test_librarian_manages_readers_only(lib, librarian):
    member = lib.create_user(librarian, username="member", full_name="New Member", password="pw")
    assert member.role == Role.USER

    with pytest.raises(PermissionDeniedError):
        lib.create_user(librarian, username="boss", full_name="Boss", password="pw", role=Role.ADMIN)
    with pytest.raises(PermissionDeniedError):
        lib.create_user(librarian, username="lib2", full_name="Lib", password="pw", role="LIBRARIAN")
    with pytest.raises(PermissionDeniedError):
        lib.delete_user(librarian, member.id)
    assert lib.find_user(member.id) is not None


def test_librarian_lists_readers_only(lib, librarian, admin):
    assert {u.role for u in lib.list_users(librarian)} == {Role.USER}
    assert {u.role for u in lib.list_users(admin)} == {Role.ADMIN, Role.LIBRARIAN, Role.USER}


def test_reader_cannot_list_users(lib, reader):
    with pytest.raises(PermissionDeniedError):
        lib.list_users(reader)


def test_admin_creates_staff(lib, admin):
    staff = lib.create_user(admin, username="lib2", full_name="Second Librarian",
                            password="pw", role=Role.LIBRARIAN, birth_date="1990-05-01")
    assert staff.role == Role.LIBRARIAN
    assert staff.birth_date == "1990-05-01"


def test_update_keeps_password_when_empty(lib, admin, reader):
    lib.update_user(admin, reader.id, {"full_name": "Renamed Reader", "password": ""})
    assert lib.login("user", "123").full_name == "Renamed Reader"

    lib.update_user(admin, reader.id, {"password": "newpass"})
    assert lib.login("user", "123") is None
    assert lib.login("user", "newpass") is not None


def test_own_profile_update(lib, reader):
    updated = lib.update_user(reader, reader.id, {
        "full_name": "Me Myself",
        "preferences": {"dark_mode": True},
    })
    assert updated.preferences.dark_mode is True
    assert updated.preferences.notifications is True
    assert lib.find_user(reader.id).full_name == "Me Myself"


def test_unknown_role_is_a_validation_error(lib, admin, reader):
    with pytest.raises(ValidationError, match="Unknown role"):
        lib.create_user(admin, username="odd", full_name="Odd", password="pw", role="SUPERUSER")
    with pytest.raises(ValidationError, match="Unknown role"):
        lib.update_user(admin, reader.id, {"role": "owner"})
    assert lib.find_user(reader.id).role == Role.USER


def test_reader_cannot_promote_self_or_edit_others(lib, reader, librarian):
    with pytest.raises(PermissionDeniedError):
        lib.update_user(reader, reader.id, {"role": Role.ADMIN})
    with pytest.raises(PermissionDeniedError):
        lib.update_user(reader, librarian.id, {"full_name": "Hacked"})


def test_librarian_cannot_edit_staff(lib, librarian, admin):
    with pytest.raises(PermissionDeniedError):
        lib.update_user(librarian, admin.id, {"full_name": "Renamed"})


def test_update_unknown_field_or_user(lib, admin, reader):
    with pytest.raises(ValidationError):
        lib.update_user(admin, reader.id, {"balance": 10})
    with pytest.raises(NotFoundError):
        lib.update_user(admin, "user-missing", {"full_name": "X"})


def test_rename_to_taken_username(lib, admin, reader):
    with pytest.raises(StateConflictError):
        lib.update_user(admin, reader.id, {"username": "librarian"})


def test_last_admin_cannot_be_demoted_or_deleted(lib, admin):
    with pytest.raises(InvariantGuardError):
        lib.update_user(admin, admin.id, {"role": Role.USER})
    with pytest.raises(InvariantGuardError):
        lib.delete_user(admin, admin.id)
    assert lib.find_user(admin.id).role == Role.ADMIN


def test_admin_can_go_once_another_exists(lib, admin):
    second = lib.create_user(admin, username="admin2", full_name="Second Admin",
                             password="pw", role=Role.ADMIN)
    lib.delete_user(second, admin.id)
    assert lib.find_user(admin.id) is None


def test_delete_user_removes_pending_edit_request(lib, admin, librarian, reader):
    lib.propose_user_edit(librarian, reader.id, {"full_name": "Changed"})
    lib.delete_user(admin, reader.id)
    assert lib.find_user(reader.id) is None
    assert lib.list_edit_requests(admin) == []


def test_delete_unknown_user(lib, admin):
    with pytest.raises(NotFoundError):
        lib.delete_user(admin, "user-missing")
