import os
import tempfile

import pytest

# sheetopia.app opens its database at import time
os.environ.setdefault("SHEETOPIA_DATA_DIR", tempfile.mkdtemp(prefix="sheetopia-tests-"))

from sheetopia import grid
from sheetopia.formula import SheetValues
from sheetopia.storage import DatabaseManager, SpreadsheetRepository


@pytest.fixture
def doc():
    """Empty 50x26 grid."""
    return grid.create_empty()


@pytest.fixture
def mixed_row_values():
    """One row holding a numeric string, text, a number and an empty cell."""
    return SheetValues.from_rows([["3", "x", 5, None]])


@pytest.fixture
def repo(tmp_path):
    db = DatabaseManager(str(tmp_path / "sheets.db"))
    db.initialize_schema()
    return SpreadsheetRepository(db)


@pytest.fixture
def client(repo, monkeypatch):
    from fastapi.testclient import TestClient
    from sheetopia import app as app_module

    monkeypatch.setattr(app_module, "spreadsheet_repo", repo)
    with TestClient(app_module.app) as c:
        yield c
