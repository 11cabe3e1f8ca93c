from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from core.models import AuditLog, Branch


class BranchAccessRoleTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.branch_a = Branch.objects.create(code="BA", name="Branch A")
        self.branch_b = Branch.objects.create(code="BB", name="Branch B")

        self.admin = self.user_model.objects.create_user(
            username="branch-admin",
            password="pass1234",
            branch=self.branch_a,
            role="admin",
        )
        self.delivery = self.user_model.objects.create_user(
            username="branch-delivery",
            password="pass1234",
            branch=self.branch_a,
            role="delivery",
        )

    def test_admin_can_list_multiple_branches(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        ids = {item["id"] for item in payload["results"]}
        self.assertIn(str(self.branch_a.id), ids)
        self.assertIn(str(self.branch_b.id), ids)

    def test_non_admin_branch_scope_is_preserved(self):
        self.client.force_authenticate(user=self.delivery)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(self.branch_a.id), ids)
        self.assertNotIn(str(self.branch_b.id), ids)

    def test_delivery_cannot_create_branch_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.delivery)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/branches/", {"code": "BX", "name": "Nope"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))
        self.assertFalse(Branch.objects.filter(code="BX").exists())

    def test_branch_delete_deactivates(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/branches/{self.branch_b.id}/")

        self.assertEqual(response.status_code, 204)
        self.branch_b.refresh_from_db()
        self.assertFalse(self.branch_b.is_active)
        self.assertTrue(AuditLog.objects.filter(action="branch.deactivate", entity_id=self.branch_b.id).exists())


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="AL", name="Audit")
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            branch=self.branch,
            role="admin",
        )

    def test_branch_create_writes_audit_log(self):
        self.client.force_authenticate(user=self.admin)
        res = self.client.post(
            "/api/v1/branches/",
            {"code": "AL2", "name": "Audit Two"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(res.status_code, 201)
        self.assertEqual(res["X-Request-ID"], "req-123")
        self.assertTrue(AuditLog.objects.filter(action="branch.create", entity="branch", request_id="req-123").exists())

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", branch=self.branch, actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)
        self.assertEqual(patch_res.json()["code"], "method_not_allowed")

    def test_audit_log_export_is_csv(self):
        self.client.force_authenticate(user=self.admin)
        AuditLog.objects.create(action="test.action", entity="test", branch=self.branch, actor=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        body = response.content.decode()
        self.assertIn("test.action", body)
        self.assertIn("audit-admin", body)


class ErrorEnvelopeTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.branch = Branch.objects.create(code="EE", name="Envelope")
        self.admin = get_user_model().objects.create_user(
            username="envelope-admin",
            password="pass1234",
            branch=self.branch,
            role="admin",
        )

    def test_unauthenticated_request_uses_envelope(self):
        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertEqual(payload["status"], 401)

    def test_validation_errors_are_reported_per_field(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/branches/", {"name": "Missing code"}, format="json")

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertEqual(payload["message"], "Validation failed.")
        self.assertIn("code", payload["errors"])


class AuthTokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.branch = Branch.objects.create(code="TK", name="Token")
        self.user = get_user_model().objects.create_user(
            username="token-user",
            email="Token.User@example.com",
            password="pass1234",
            branch=self.branch,
            role="delivery",
        )

    def test_login_with_email_returns_token_pair(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token.user@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())


class HealthCheckTests(TestCase):
    def test_healthz_and_readyz(self):
        client = APIClient()

        health = client.get("/healthz/")
        ready = client.get("/readyz/")

        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json()["status"], "ok")
        self.assertEqual(ready.status_code, 200)
        self.assertEqual(ready.json()["status"], "ready")
