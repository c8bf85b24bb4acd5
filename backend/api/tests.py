from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIClient

from api import rbac
from api.authentication import Principal, _claim, _parse_claim_list


class HealthEndpointTests(TestCase):
    def test_health(self) -> None:
        client = APIClient()
        response = client.get("/api/v1/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


class AuthWhoAmITests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(
        AUTH_ENABLED=True,
        DEV_AUTH_ENABLED=False,
        AUTH_ISSUER="https://issuer.example",
        AUTH_AUDIENCE="aidlink-api",
        AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
        AUTH_USER_ID_CLAIM="sub",
        AUTH_ROLES_CLAIM="roles",
    )
    def test_whoami_requires_auth(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 401)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="dev-user",
        DEV_AUTH_ROLES=["VIEWER"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_whoami_unknown_role_has_no_permissions(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_id"], "dev-user")
        self.assertEqual(body["roles"], ["VIEWER"])
        self.assertEqual(body["permissions"], [])

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="supplier-1",
        DEV_AUTH_ROLES=["supplier"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_whoami_lists_role_permissions(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_id"], "supplier-1")
        self.assertIn(rbac.PERM_CONTRIBUTION_COMMIT, body["permissions"])
        self.assertNotIn(rbac.PERM_ALLOCATION_CREATE, body["permissions"])


class RbacResolutionTests(SimpleTestCase):
    def test_role_defaults_merge_with_token_grants(self) -> None:
        request = type("Request", (), {})()
        principal = Principal(
            user_id="u-1",
            username="driver",
            roles=["DRIVER", "DRIVER"],
            permissions=["custom.grant"],
        )

        roles, permissions = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(roles, ["DRIVER"])
        self.assertEqual(permissions[0], "custom.grant")
        self.assertIn(rbac.PERM_DELIVERY_UPDATE, permissions)
        self.assertNotIn(rbac.PERM_DELIVERY_SCHEDULE, permissions)

    def test_resolution_is_cached_per_request(self) -> None:
        request = type("Request", (), {})()
        principal = Principal(user_id="u-1", username=None, roles=["ADMIN"])

        first = rbac.resolve_roles_and_permissions(request, principal)
        principal.roles = []
        second = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(first, second)


class ClaimParsingTests(SimpleTestCase):
    def test_nested_claim_lookup(self) -> None:
        payload = {"realm_access": {"roles": ["admin"]}}

        self.assertEqual(_claim(payload, "realm_access.roles"), ["admin"])
        self.assertIsNone(_claim(payload, "realm_access.missing.deeper"))
        self.assertIsNone(_claim(payload, ""))

    def test_claim_list_accepts_csv_and_lists(self) -> None:
        self.assertEqual(_parse_claim_list("a, b,,c"), ["a", "b", "c"])
        self.assertEqual(_parse_claim_list(["x", " "]), ["x"])
        self.assertEqual(_parse_claim_list(None), [])
