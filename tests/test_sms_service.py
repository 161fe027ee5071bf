import os
import unittest
from types import SimpleNamespace
from unittest.mock import patch

from twilio.base.exceptions import TwilioException

from services import sms_service
from services.crm_store import reset_memory_store_for_tests
from shared.errors import InvalidStateError, NotFoundError, ValidationFailedError

TENANT = "tenant-a"


class FakeMessages:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.failures:
            self.failures -= 1
            raise TwilioException("carrier unavailable")
        return SimpleNamespace(sid=f"SM{len(self.calls)}")


class SmsServiceTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self.messages = FakeMessages()
        sms_service.set_client_for_tests(SimpleNamespace(messages=self.messages))
        self.addCleanup(sms_service.set_client_for_tests, None)
        env = patch.dict(
            os.environ,
            {"TWILIO_FROM_NUMBER": "+15550001111", "TWILIO_MESSAGING_SERVICE_SID": ""},
        )
        env.start()
        self.addCleanup(env.stop)

    def test_normalize_phone(self):
        self.assertEqual(sms_service.normalize_phone("(555) 123-4567"), "+15551234567")
        self.assertEqual(sms_service.normalize_phone("+44 20 7946 0958"), "+442079460958")
        self.assertEqual(sms_service.normalize_phone("0044 20 7946 0958"), "+442079460958")
        self.assertEqual(sms_service.normalize_phone("abc"), "")

    def test_render_template(self):
        rendered = sms_service.render_template(
            "Hi {{ name }}, your {{order.id}} ships {{when}}.", {"name": "Ada", "order": {"id": "A-1"}}
        )
        self.assertEqual(rendered, "Hi Ada, your A-1 ships .")

    def test_send_records_sent_message(self):
        message = sms_service.send_sms(TENANT, "555-123-4567", "Hello", user_id="user-1",
                                       related_entity_type="lead", related_entity_id="lead-1")
        self.assertEqual(message["status"], "sent")
        self.assertEqual(message["providerSid"], "SM1")
        self.assertEqual(message["attempts"], 1)
        self.assertEqual(self.messages.calls[0], {"to": "+15551234567", "body": "Hello", "from_": "+15550001111"})
        self.assertEqual(sms_service.get_sms(TENANT, message["id"])["relatedEntityId"], "lead-1")

    def test_messaging_service_sid_replaces_from_number(self):
        with patch.dict(os.environ, {"TWILIO_MESSAGING_SERVICE_SID": "MG123"}):
            sms_service.send_sms(TENANT, "+15551234567", "Hello")
        self.assertEqual(self.messages.calls[0]["messaging_service_sid"], "MG123")
        self.assertNotIn("from_", self.messages.calls[0])

    def test_invalid_number_or_body_rejected(self):
        with self.assertRaises(ValidationFailedError):
            sms_service.send_sms(TENANT, "12", "Hello")
        with self.assertRaises(ValidationFailedError):
            sms_service.send_sms(TENANT, "+15551234567", "x" * (sms_service.MAX_BODY_LENGTH + 1))
        self.assertEqual(self.messages.calls, [])

    def test_provider_failure_is_recorded_and_retryable(self):
        self.messages.failures = 1
        message = sms_service.send_sms(TENANT, "+15551234567", "Hello")
        self.assertEqual(message["status"], "failed")
        self.assertIn("carrier unavailable", message["error"])

        retried = sms_service.retry_sms(TENANT, message["id"])
        self.assertEqual(retried["status"], "sent")
        self.assertEqual(retried["attempts"], 2)
        self.assertNotIn("error", retried)
        with self.assertRaises(InvalidStateError):
            sms_service.retry_sms(TENANT, message["id"])

    def test_missing_credentials_fail_the_message(self):
        sms_service.set_client_for_tests(None)
        with patch.dict(os.environ, {"TWILIO_ACCOUNT_SID": "", "TWILIO_AUTH_TOKEN": ""}):
            message = sms_service.send_sms(TENANT, "+15551234567", "Hello")
        self.assertEqual(message["status"], "failed")

    def test_retry_unknown_message(self):
        with self.assertRaises(NotFoundError):
            sms_service.retry_sms(TENANT, "missing")

    def test_templates(self):
        template = sms_service.create_template(
            TENANT, {"name": "Reminder", "body": "Hi {{name}}, see you {{ day }}"}, "admin-1"
        )
        self.assertEqual(template["variables"], ["day", "name"])
        with self.assertRaises(ValidationFailedError):
            sms_service.create_template(TENANT, {"name": "reminder", "body": "dup"}, "admin-1")

        message = sms_service.send_templated_sms(
            TENANT, template["id"], "+15551234567", {"name": "Ada", "day": "Monday"}, user_id="user-1"
        )
        self.assertEqual(message["body"], "Hi Ada, see you Monday")
        self.assertEqual(message["templateId"], template["id"])

        sms_service.delete_template(TENANT, template["id"])
        with self.assertRaises(NotFoundError):
            sms_service.send_templated_sms(TENANT, template["id"], "+15551234567")

    def test_list_filters_by_status(self):
        self.messages.failures = 1
        sms_service.send_sms(TENANT, "+15551234567", "first")
        sms_service.send_sms(TENANT, "+15551234567", "second")
        failed, _ = sms_service.list_sms(TENANT, status="failed")
        self.assertEqual([item["body"] for item in failed], ["first"])
        everything, _ = sms_service.list_sms(TENANT)
        self.assertEqual(len(everything), 2)


if __name__ == "__main__":
    unittest.main()
