from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for entry in (PROJECT_ROOT, TESTS_DIR):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

# Keep settings, tokens and logs of the test run out of the user's profile.
os.environ["CLASSBOOK_HOME"] = tempfile.mkdtemp(prefix="classbook-tests-")

import db  # noqa: E402


@pytest.fixture
def database(tmp_path: Path) -> Path:
    db_path = tmp_path / "classbook.db"
    db.set_database_path(db_path)
    db.initialize_database()
    return db_path
