import os as _os
import sys
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from qcr import db  # noqa: E402
from qcr.settings import settings  # noqa: E402


@pytest.fixture(autouse=True)
def store(tmp_path, monkeypatch):
    """Point the store at a fresh sqlite file for every test."""
    monkeypatch.setattr(db, "settings", replace(settings, db_path=str(tmp_path / "qcr.db")))
    db.init_db()
    return db
