from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from core.models import Branch
from notifications.models import OutboxEvent
from notifications.publisher import AUDIENCE_ADMINS, publish


class ExplodingSink:
    def send(self, event):
        raise RuntimeError("sink down")


class PublisherTests(TestCase):
    def test_events_are_stored_after_commit(self):
        branch = Branch.objects.create(code="N1", name="Notify")

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            publish("sale_created", {"total": 10}, branch_id=branch.id, audience=AUDIENCE_ADMINS, entity="sale")
            self.assertFalse(OutboxEvent.objects.exists())

        self.assertEqual(len(callbacks), 1)
        event = OutboxEvent.objects.get()
        self.assertEqual(event.event_type, "sale_created")
        self.assertEqual(event.branch_id, branch.id)
        self.assertEqual(event.audience, "admins")
        self.assertEqual(event.payload, {"total": 10})

    @override_settings(NOTIFICATION_SINKS=["notifications.tests.ExplodingSink", "notifications.sinks.OutboxSink"])
    def test_sink_failure_is_logged_and_other_sinks_still_run(self):
        with self.assertLogs("notifications.publisher", level="ERROR") as cm:
            with self.captureOnCommitCallbacks(execute=True):
                publish("quotation_created", {"quotation_number": "Q-1"})

        self.assertTrue(any("notification_delivery_failed" in line for line in cm.output))
        self.assertTrue(OutboxEvent.objects.filter(event_type="quotation_created").exists())

    @override_settings(NOTIFICATION_SINKS=["notifications.sinks.LoggingSink"])
    def test_logging_sink_writes_one_line_per_event(self):
        with self.assertLogs("notifications.sinks", level="INFO") as cm:
            with self.captureOnCommitCallbacks(execute=True):
                publish("transfer_completed", {"quantity": 3}, entity="stock_transfer")

        self.assertEqual(len(cm.records), 1)
        self.assertEqual(cm.records[0].getMessage(), "notification_published")
        self.assertEqual(cm.records[0].event_type, "transfer_completed")
        self.assertFalse(OutboxEvent.objects.exists())

    @override_settings(NOTIFICATION_SINKS=["notifications.sinks.MissingSink"])
    def test_misconfigured_sinks_do_not_raise(self):
        with self.assertLogs("notifications.publisher", level="ERROR") as cm:
            with self.captureOnCommitCallbacks(execute=True):
                publish("quotation_created", {})

        self.assertTrue(any("notification_sink_config_invalid" in line for line in cm.output))
        self.assertFalse(OutboxEvent.objects.exists())


class NotificationPullTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.branch_a = Branch.objects.create(code="NA", name="Notify A")
        self.branch_b = Branch.objects.create(code="NB", name="Notify B")
        self.admin = user_model.objects.create_user(username="notify-admin", password="pass1234", role="admin", branch=self.branch_a)
        self.superadmin = user_model.objects.create_user(username="notify-super", password="pass1234", role="superadmin")
        self.delivery = user_model.objects.create_user(
            username="notify-delivery", password="pass1234", role="delivery", branch=self.branch_a
        )
        self.customer = user_model.objects.create_user(username="notify-customer", password="pass1234", role="customer")

        self.branch_all = OutboxEvent.objects.create(event_type="e1", branch_id=self.branch_a.id, audience="all", payload={})
        self.branch_admins = OutboxEvent.objects.create(
            event_type="e2", branch_id=self.branch_a.id, audience="admins", payload={}
        )
        self.other_branch = OutboxEvent.objects.create(event_type="e3", branch_id=self.branch_b.id, audience="all", payload={})
        self.global_event = OutboxEvent.objects.create(event_type="e4", audience="all", payload={})
        self.customer_event = OutboxEvent.objects.create(
            event_type="e5",
            branch_id=self.branch_a.id,
            audience="all",
            payload={"created_by_id": str(self.customer.id)},
        )

    def pull(self, user, **data):
        self.client.force_authenticate(user=user)
        return self.client.post("/api/v1/notifications/pull/", data, format="json")

    def event_types(self, response):
        return [event["event_type"] for event in response.json()["events"]]

    def test_admin_sees_branch_and_global_events(self):
        response = self.pull(self.admin)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.event_types(response), ["e1", "e2", "e4", "e5"])
        self.assertFalse(response.json()["has_more"])
        self.assertEqual(response.json()["server_cursor"], self.customer_event.id)

    def test_superadmin_sees_everything(self):
        self.assertEqual(self.event_types(self.pull(self.superadmin)), ["e1", "e2", "e3", "e4", "e5"])

    def test_delivery_does_not_see_admin_events(self):
        self.assertEqual(self.event_types(self.pull(self.delivery)), ["e1", "e4", "e5"])

    def test_customer_sees_only_own_and_global_events(self):
        self.assertEqual(self.event_types(self.pull(self.customer)), ["e4", "e5"])

    def test_cursor_paging(self):
        first = self.pull(self.admin, limit=2)

        self.assertEqual(self.event_types(first), ["e1", "e2"])
        self.assertTrue(first.json()["has_more"])
        cursor = first.json()["server_cursor"]
        self.assertEqual(cursor, self.branch_admins.id)

        second = self.pull(self.admin, cursor=cursor, limit=2)
        self.assertEqual(self.event_types(second), ["e4", "e5"])
        self.assertFalse(second.json()["has_more"])

        empty = self.pull(self.admin, cursor=second.json()["server_cursor"])
        self.assertEqual(empty.json()["events"], [])
        self.assertEqual(empty.json()["server_cursor"], second.json()["server_cursor"])

    def test_invalid_limit(self):
        response = self.pull(self.admin, limit=0)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("limit", response.json()["errors"])
