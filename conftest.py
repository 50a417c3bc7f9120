import pytest

from config import settings
from library import Library


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    # lowest bcrypt cost keeps account-heavy tests quick
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)


@pytest.fixture
def db_file(tmp_path, request):
    # A separate database file for every test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file, seed=True)
    yield lib
    lib.shutdown()


@pytest.fixture
def admin(lib):
    return lib.login("admin", "123")


@pytest.fixture
def librarian(lib):
    return lib.login("librarian", "123")


@pytest.fixture
def reader(lib):
    return lib.login("user", "123")
