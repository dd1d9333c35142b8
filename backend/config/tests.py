import importlib
import os
from unittest.mock import patch

from django.test import SimpleTestCase, TestCase

from config import settings as project_settings


class DatabaseSettingsTests(SimpleTestCase):
    def load_database(self, **env):
        with patch.dict(os.environ, env):
            module = importlib.reload(project_settings)
        self.addCleanup(importlib.reload, project_settings)
        return module.DATABASES["default"]

    def test_sqlite_path(self):
        database = self.load_database(DATABASE_ENGINE="sqlite", SQLITE_PATH="/data/gym.sqlite3")
        self.assertEqual(
            database, {"ENGINE": "django.db.backends.sqlite3", "NAME": "/data/gym.sqlite3"}
        )

    def test_postgres_fields(self):
        database = self.load_database(
            DATABASE_ENGINE="postgres",
            POSTGRES_DB="billing",
            POSTGRES_USER="billing_user",
            POSTGRES_PASSWORD="p@ss:word",
            POSTGRES_HOST="pg.internal",
            POSTGRES_PORT="6543",
        )
        self.assertEqual(database["ENGINE"], "django.db.backends.postgresql")
        self.assertEqual(database["NAME"], "billing")
        self.assertEqual(database["USER"], "billing_user")
        self.assertEqual(database["PASSWORD"], "p@ss:word")
        self.assertEqual(database["HOST"], "pg.internal")
        self.assertEqual(database["PORT"], 6543)
        self.assertEqual(database["CONN_MAX_AGE"], 60)


class SchemaTests(TestCase):
    def test_schema_is_served(self):
        response = self.client.get("/api/schema/")
        self.assertEqual(response.status_code, 200)
        self.assertIn(b"Gym Membership Billing API", response.content)
