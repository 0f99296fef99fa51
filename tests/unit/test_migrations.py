"""
Alembic migrations produce the same tables and columns as the ORM models.
"""

from __future__ import annotations

import importlib.util
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from paperpulse.infrastructure.stores.models import Base

VERSIONS = Path(__file__).resolve().parents[2] / "alembic" / "versions"


def _load(name: str):
    spec = importlib.util.spec_from_file_location(name, VERSIONS / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _migrations():
    modules = [_load(p.stem) for p in sorted(VERSIONS.glob("*.py"))]
    # Chain order follows down_revision
    assert [m.down_revision for m in modules] == [None] + [m.revision for m in modules[:-1]]
    return modules


def test_upgrade_matches_models(tmp_path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            for module in _migrations():
                module.upgrade()
            # Re-running is a no-op once tables exist
            for module in _migrations():
                module.upgrade()

    inspector = sa.inspect(engine)
    assert set(inspector.get_table_names()) == set(Base.metadata.tables)
    for name, table in Base.metadata.tables.items():
        migrated = {c["name"] for c in inspector.get_columns(name)}
        assert migrated == {c.name for c in table.columns}, name


def test_downgrade_drops_everything(tmp_path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            modules = _migrations()
            for module in modules:
                module.upgrade()
            for module in reversed(modules):
                module.downgrade()

    assert sa.inspect(engine).get_table_names() == []
