import unittest

from services.crm_rbac import (
    can_delete_records,
    can_manage_all,
    can_manage_settings,
    can_view_record,
    can_write_entity,
    has_permission,
    normalize_role,
)


class CrmRbacTests(unittest.TestCase):
    def test_role_aliases_are_normalized(self):
        self.assertEqual(normalize_role("owner"), "admin")
        self.assertEqual(normalize_role("tenant_admin"), "tenantAdmin")
        self.assertEqual(normalize_role("member"), "user")
        self.assertEqual(normalize_role(None), "guest")
        self.assertEqual(normalize_role("something-else"), "guest")

    def test_admin_has_every_permission(self):
        self.assertTrue(has_permission("admin", "manage:plans"))
        self.assertTrue(has_permission("admin", "delete:customers"))

    def test_tenant_admin_cannot_manage_platform(self):
        self.assertTrue(has_permission("tenantAdmin", "delete:leads"))
        self.assertFalse(has_permission("tenantAdmin", "manage:plans"))
        self.assertFalse(has_permission("tenantAdmin", "access:admin"))

    def test_guest_is_read_only(self):
        self.assertTrue(has_permission("guest", "read:leads"))
        self.assertFalse(has_permission("guest", "create:leads"))
        self.assertFalse(can_write_entity("guest", "lead"))

    def test_user_can_write_leads_and_customers(self):
        self.assertTrue(can_write_entity("user", "lead"))
        self.assertTrue(can_write_entity("user", "customer"))
        self.assertFalse(can_delete_records("user"))
        self.assertFalse(can_manage_settings("user"))

    def test_settings_and_deletes_are_admin_only(self):
        self.assertTrue(can_manage_settings("tenantAdmin"))
        self.assertTrue(can_manage_settings("admin"))
        self.assertFalse(can_manage_settings("manager"))
        self.assertTrue(can_delete_records("tenantAdmin"))
        self.assertFalse(can_delete_records("manager"))

    def test_record_visibility(self):
        record = {"assignedTo": "u-1"}
        self.assertTrue(can_manage_all("manager"))
        self.assertTrue(can_view_record("manager", "u-9", record))
        self.assertTrue(can_view_record("user", "u-1", record))
        self.assertFalse(can_view_record("user", "u-2", record))
        self.assertTrue(can_view_record("user", "u-2", {"assignedTo": ""}))


if __name__ == "__main__":
    unittest.main()
