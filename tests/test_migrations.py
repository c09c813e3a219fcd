"""
Database migration tests.

Tests that verify:
- Migrations run successfully on a fresh database
- Migrations are reversible (downgrade)
- The migrated schema matches the application metadata
"""

from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic import command
from alembic.config import Config

from api.database import metadata


class TestMigrations:
    """Test database migrations with Alembic."""

    @pytest.fixture
    def fresh_db_url(self, tmp_path):
        return f"sqlite:///{tmp_path / 'migrations.db'}"

    @pytest.fixture
    def alembic_config(self, fresh_db_url):
        """Create Alembic config pointing to an empty database."""
        repo_root = Path(__file__).parent.parent
        config = Config(str(repo_root / "alembic.ini"))
        config.set_main_option("script_location", str(repo_root / "migrations"))
        config.set_main_option("sqlalchemy.url", fresh_db_url)
        return config

    def test_upgrade_head(self, alembic_config, fresh_db_url):
        """All migrations apply to a fresh database."""
        command.upgrade(alembic_config, "head")

        engine = sa.create_engine(fresh_db_url)
        inspector = sa.inspect(engine)
        tables = set(inspector.get_table_names())
        assert {"thumbnail_sets", "thumbnail_candidates", "alembic_version"}.issubset(tables)

        # Columns match the application metadata
        for table_name in ("thumbnail_sets", "thumbnail_candidates"):
            migrated = {column["name"] for column in inspector.get_columns(table_name)}
            assert migrated == set(metadata.tables[table_name].columns.keys())

        indexes = {index["name"]: index for index in inspector.get_indexes("thumbnail_candidates")}
        assert indexes["uq_thumbnail_candidates_active_seek"]["unique"]
        engine.dispose()

    def test_active_seek_time_unique(self, alembic_config, fresh_db_url):
        """Only one active candidate per (video, seek time); superseded rows don't count."""
        command.upgrade(alembic_config, "head")
        engine = sa.create_engine(fresh_db_url)

        insert = sa.text(
            "INSERT INTO thumbnail_candidates (id, video_key, seek_time_seconds, pixel_score, upload_status, superseded_at) "
            "VALUES (:id, 'vid-1', 5, 50, 'pending', :superseded_at)"
        )
        with engine.begin() as conn:
            conn.execute(sa.text("INSERT INTO thumbnail_sets (video_key, selection_mode) VALUES ('vid-1', 'auto')"))
            conn.execute(insert, {"id": "old", "superseded_at": "2026-01-01 00:00:00"})
            conn.execute(insert, {"id": "new", "superseded_at": None})

        with pytest.raises(sa.exc.IntegrityError):
            with engine.begin() as conn:
                conn.execute(insert, {"id": "dupe", "superseded_at": None})
        engine.dispose()

    def test_downgrade_base(self, alembic_config, fresh_db_url):
        """Migrations can be reversed."""
        command.upgrade(alembic_config, "head")
        command.downgrade(alembic_config, "base")

        engine = sa.create_engine(fresh_db_url)
        tables = sa.inspect(engine).get_table_names()
        assert set(tables).issubset({"alembic_version"})
        engine.dispose()
