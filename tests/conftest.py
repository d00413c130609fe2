import pytest

from pwhashdb.store import open_store


@pytest.fixture
def write_lines(tmp_path):
    def _write(name, lines):
        path = tmp_path / name
        path.write_text("".join(f"{l}\n" for l in lines), encoding="utf-8")
        return path
    return _write


@pytest.fixture(params=["sqlite", "csv"])
def store(request, tmp_path):
    suffix = ".db" if request.param == "sqlite" else ".csv"
    s = open_store(tmp_path / f"store{suffix}")
    yield s
    s.close()
