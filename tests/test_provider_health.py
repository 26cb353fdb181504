import os
import unittest

from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

from app.main import app
from app.core.config import settings


class ProviderHealthTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(app)
        self._settings_backup = {
            "SMS_PROVIDER": settings.SMS_PROVIDER,
            "MSG91_AUTH_KEY": settings.MSG91_AUTH_KEY,
            "EMAIL_PROVIDER": settings.EMAIL_PROVIDER,
            "OTP_DEV_MODE": settings.OTP_DEV_MODE,
        }
        settings.OTP_DEV_MODE = False
        settings.EMAIL_PROVIDER = "dummy"

    def tearDown(self):
        self.client.close()
        for key, value in self._settings_backup.items():
            setattr(settings, key, value)

    def test_provider_health_dummy_mode(self):
        settings.SMS_PROVIDER = "dummy"
        response = self.client.get("/health/providers")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body.get("status"), "ok")
        self.assertEqual(body["sms"].get("provider"), "dummy")
        self.assertEqual(body["sms"].get("mode"), "mock")
        self.assertTrue(bool(body["email"].get("can_send")))

    def test_provider_health_msg91_degraded_when_missing_credentials(self):
        settings.SMS_PROVIDER = "msg91"
        settings.MSG91_AUTH_KEY = ""
        response = self.client.get("/health/providers")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body.get("status"), "degraded")
        self.assertEqual(body["sms"].get("status"), "degraded")
        self.assertIn("MSG91_AUTH_KEY is not set", body["sms"].get("issues"))

    def test_provider_health_unknown_provider(self):
        settings.SMS_PROVIDER = "unknown"
        response = self.client.get("/health/providers")
        body = response.json()
        self.assertEqual(body["sms"].get("status"), "error")
        self.assertFalse(bool(body["sms"].get("can_send")))
