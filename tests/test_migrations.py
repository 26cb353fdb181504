import os
import unittest
from pathlib import Path
from unittest.mock import patch

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import make_url

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class MigrationTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        db_url_raw = os.getenv("DATABASE_URL", "")
        if not db_url_raw.startswith("postgresql"):
            raise unittest.SkipTest("Migration test requires PostgreSQL DATABASE_URL")

        base_url = make_url(db_url_raw)
        cls.test_db_name = f"{base_url.database}_migration_test"
        cls.test_url = base_url.set(database=cls.test_db_name).render_as_string(hide_password=False)
        cls.admin_engine = create_engine(base_url.set(database="postgres"), isolation_level="AUTOCOMMIT")
        cls._recreate_database()

        cls.alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
        cls.alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
        cls._alembic("upgrade", "head")
        cls.engine = create_engine(cls.test_url)

    @classmethod
    def tearDownClass(cls):
        if hasattr(cls, "engine"):
            cls.engine.dispose()
        if hasattr(cls, "admin_engine"):
            cls._drop_database()
            cls.admin_engine.dispose()

    @classmethod
    def _alembic(cls, action: str, revision: str):
        # alembic/env.py reads the target from DATABASE_URL.
        with patch.dict(os.environ, {"DATABASE_URL": cls.test_url}):
            getattr(command, action)(cls.alembic_cfg, revision)

    @classmethod
    def _drop_database(cls):
        with cls.admin_engine.connect() as conn:
            conn.execute(
                text(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = :name AND pid <> pg_backend_pid()"
                ),
                {"name": cls.test_db_name},
            )
            conn.execute(text(f'DROP DATABASE IF EXISTS "{cls.test_db_name}"'))

    @classmethod
    def _recreate_database(cls):
        cls._drop_database()
        with cls.admin_engine.connect() as conn:
            conn.execute(text(f'CREATE DATABASE "{cls.test_db_name}"'))

    def test_upgrade_head_creates_expected_tables(self):
        expected = {"users", "merchant_profiles", "otp_tokens", "alembic_version"}
        tables = set(inspect(self.engine).get_table_names())
        self.assertTrue(expected.issubset(tables), f"Missing tables: {expected - tables}")

    def test_alembic_version_is_set(self):
        with self.engine.connect() as conn:
            version = conn.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        self.assertEqual(version, "0001_init")

    def test_otp_tokens_are_unique_per_channel_and_identifier(self):
        constraints = inspect(self.engine).get_unique_constraints("otp_tokens")
        columns = [sorted(item["column_names"]) for item in constraints]
        self.assertIn(["channel", "identifier"], columns)

    def test_downgrade_and_upgrade_again(self):
        self._alembic("downgrade", "base")
        self.assertNotIn("otp_tokens", inspect(self.engine).get_table_names())

        self._alembic("upgrade", "head")
        self.assertIn("otp_tokens", inspect(self.engine).get_table_names())
