import unittest

from services.crm_store import (
    collection_path,
    create_entity,
    delete_all,
    delete_entity,
    get_entity,
    list_entities,
    new_id,
    patch_entity,
    query_all,
    query_all_partitions,
    require_tenant,
    reset_memory_store_for_tests,
)
from shared.errors import ConflictError, TenantContextError


class CrmTenantIsolationTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_partition_isolation_for_leads(self):
        lead_a = create_entity("leads", "tenant-a", {"firstName": "Ada", "status": "new"})
        lead_b = create_entity("leads", "tenant-b", {"firstName": "Bo", "status": "new"})

        list_a, _ = list_entities("leads", "tenant-a", limit=20)
        list_b, _ = list_entities("leads", "tenant-b", limit=20)

        ids_a = {item["id"] for item in list_a}
        ids_b = {item["id"] for item in list_b}
        self.assertIn(lead_a["id"], ids_a)
        self.assertNotIn(lead_b["id"], ids_a)
        self.assertIn(lead_b["id"], ids_b)
        self.assertNotIn(lead_a["id"], ids_b)

    def test_cross_tenant_get_and_delete_miss(self):
        lead = create_entity("leads", "tenant-a", {"firstName": "Ada"})
        self.assertIsNone(get_entity("leads", "tenant-b", lead["id"]))
        self.assertFalse(delete_entity("leads", "tenant-b", lead["id"]))
        self.assertIsNone(patch_entity("leads", "tenant-b", lead["id"], {"firstName": "Eve"}))
        self.assertEqual(get_entity("leads", "tenant-a", lead["id"])["firstName"], "Ada")

    def test_empty_tenant_is_rejected(self):
        with self.assertRaises(TenantContextError):
            require_tenant("  ")
        with self.assertRaises(TenantContextError):
            create_entity("leads", "", {"firstName": "Ada"})

    def test_collection_path(self):
        self.assertEqual(collection_path("customers", "t1"), "tenants/t1/customers")
        self.assertEqual(collection_path("webhooks", "t1"), "tenants/t1/webhooks")
        self.assertEqual(collection_path("plans", "t1"), "plans")

    def test_patch_merges_and_none_clears(self):
        lead = create_entity("leads", "tenant-a", {"firstName": "Ada", "notes": "call back", "tags": ["vip"]})
        updated = patch_entity("leads", "tenant-a", lead["id"], {"notes": None, "status": "contacted"})
        self.assertNotIn("notes", updated)
        self.assertEqual(updated["status"], "contacted")
        self.assertEqual(updated["tags"], ["vip"])
        self.assertEqual(updated["createdAt"], lead["createdAt"])

    def test_list_cursor_pages_through_results(self):
        for index in range(5):
            create_entity("leads", "tenant-a", {"firstName": f"Lead {index}"}, entity_id=f"id-{index}")
        page, cursor = list_entities("leads", "tenant-a", limit=2)
        self.assertEqual([item["id"] for item in page], ["id-0", "id-1"])
        self.assertEqual(cursor, "id-1")
        page, cursor = list_entities("leads", "tenant-a", limit=2, cursor=cursor)
        self.assertEqual([item["id"] for item in page], ["id-2", "id-3"])
        page, cursor = list_entities("leads", "tenant-a", limit=2, cursor=cursor)
        self.assertEqual([item["id"] for item in page], ["id-4"])
        self.assertIsNone(cursor)

    def test_create_with_existing_id_conflicts(self):
        create_entity("customers", "tenant-a", {"name": "Acme"}, entity_id="cust-1")
        with self.assertRaises(ConflictError):
            create_entity("customers", "tenant-a", {"name": "Evil"}, entity_id="cust-1")
        self.assertEqual(get_entity("customers", "tenant-a", "cust-1")["name"], "Acme")
        # Same row key in another tenant is a different row.
        create_entity("customers", "tenant-b", {"name": "Other"}, entity_id="cust-1")

    def test_new_ids_are_unique_and_increasing(self):
        ids = [new_id() for _ in range(500)]
        self.assertEqual(len(set(ids)), 500)
        self.assertEqual(ids, sorted(ids))

    def test_delete_all_only_touches_one_tenant(self):
        create_entity("customers", "tenant-a", {"name": "A1"})
        create_entity("customers", "tenant-a", {"name": "A2"})
        create_entity("customers", "tenant-b", {"name": "B1"})
        self.assertEqual(delete_all("customers", "tenant-a"), 2)
        self.assertEqual(query_all("customers", "tenant-a"), [])
        self.assertEqual(len(query_all("customers", "tenant-b")), 1)

    def test_query_all_partitions_reports_tenant(self):
        create_entity("backupSchedules", "tenant-a", {"name": "nightly", "isActive": True})
        create_entity("backupSchedules", "tenant-b", {"name": "weekly", "isActive": False})
        rows = query_all_partitions("backupSchedules", filter_fn=lambda item: item.get("isActive"))
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["tenantId"], "tenant-a")


if __name__ == "__main__":
    unittest.main()
