import unittest

from services import tag_service
from services.crm_store import reset_memory_store_for_tests
from shared.errors import ConflictError, InvalidStateError, NotFoundError, ValidationFailedError

TENANT = "tenant-a"


class TagServiceTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def _tag(self, name="Follow Up", **overrides):
        data = {"name": name, "color": "blue", "entityTypes": ["lead", "customer"]}
        data.update(overrides)
        return tag_service.create_tag(TENANT, data, "user-1")

    def test_create_zeroes_usage_per_entity_type(self):
        tag = self._tag()
        self.assertEqual(tag["usage"], {"lead": 0, "customer": 0})
        self.assertFalse(tag["isSystem"])

    def test_create_all_type_expands_usage(self):
        tag = self._tag(entityTypes=["all"])
        self.assertNotIn("all", tag["usage"])
        self.assertIn("task", tag["usage"])

    def test_duplicate_name_conflicts(self):
        self._tag()
        with self.assertRaises(ConflictError):
            self._tag()

    def test_invalid_color_rejected(self):
        with self.assertRaises(ValidationFailedError):
            self._tag(color="chartreuse")

    def test_apply_is_idempotent_and_counts_usage(self):
        tag = self._tag()
        first = tag_service.apply_tag(TENANT, tag["id"], "lead", "lead-1", "user-1")
        second = tag_service.apply_tag(TENANT, tag["id"], "lead", "lead-1", "user-1")
        self.assertEqual(first["id"], second["id"])
        self.assertEqual(tag_service.get_tag(TENANT, tag["id"])["usage"]["lead"], 1)

        tags = tag_service.get_tags_for_entity(TENANT, "lead", "lead-1")
        self.assertEqual([item["id"] for item in tags], [tag["id"]])
        self.assertEqual(tag_service.get_entities_by_tag(TENANT, tag["id"]), {"lead": ["lead-1"]})

    def test_apply_rejects_unsupported_entity_type(self):
        tag = self._tag()
        with self.assertRaises(InvalidStateError):
            tag_service.apply_tag(TENANT, tag["id"], "task", "task-1", "user-1")

    def test_apply_unknown_tag_raises(self):
        with self.assertRaises(NotFoundError):
            tag_service.apply_tag(TENANT, "missing", "lead", "lead-1", "user-1")

    def test_remove_decrements_and_allows_delete(self):
        tag = self._tag()
        tag_service.apply_tag(TENANT, tag["id"], "customer", "cust-1", "user-1")
        with self.assertRaises(InvalidStateError):
            tag_service.delete_tag(TENANT, tag["id"])

        tag_service.remove_tag(TENANT, tag["id"], "customer", "cust-1", "user-1")
        tag_service.remove_tag(TENANT, tag["id"], "customer", "cust-1", "user-1")
        self.assertEqual(tag_service.get_tag(TENANT, tag["id"])["usage"]["customer"], 0)
        tag_service.delete_tag(TENANT, tag["id"])
        self.assertIsNone(tag_service.get_tag(TENANT, tag["id"]))

    def test_system_tags_are_protected(self):
        created = tag_service.create_default_system_tags(TENANT, "user-1")
        self.assertEqual(len(created), len(tag_service.DEFAULT_SYSTEM_TAGS))
        self.assertEqual(tag_service.create_default_system_tags(TENANT, "user-1"), [])

        important = tag_service.get_tag_by_name(TENANT, "Important")
        with self.assertRaises(InvalidStateError):
            tag_service.update_tag(TENANT, important["id"], {"name": "Critical"}, "user-1")
        with self.assertRaises(InvalidStateError):
            tag_service.delete_tag(TENANT, important["id"])
        recolored = tag_service.update_tag(TENANT, important["id"], {"color": "pink"}, "user-1")
        self.assertEqual(recolored["color"], "pink")

    def test_rename_to_existing_name_conflicts(self):
        self._tag("Alpha")
        beta = self._tag("Beta")
        with self.assertRaises(ConflictError):
            tag_service.update_tag(TENANT, beta["id"], {"name": "Alpha"}, "user-1")

    def test_get_tags_filters_and_sorts(self):
        self._tag("beta", entityTypes=["lead"])
        self._tag("Alpha", entityTypes=["customer"], description="key accounts")
        self._tag("Gamma", entityTypes=["all"], isSystem=True)

        names = [tag["name"] for tag in tag_service.get_tags(TENANT)]
        self.assertEqual(names, ["Alpha", "beta", "Gamma"])
        lead_names = [tag["name"] for tag in tag_service.get_tags(TENANT, entity_type="lead")]
        self.assertEqual(lead_names, ["beta", "Gamma"])
        self.assertEqual(
            [tag["name"] for tag in tag_service.get_tags(TENANT, include_system=False, sort_direction="desc")],
            ["beta", "Alpha"],
        )
        self.assertEqual([tag["name"] for tag in tag_service.get_tags(TENANT, query="accounts")], ["Alpha"])
        self.assertEqual(len(tag_service.get_tags(TENANT, limit=1)), 1)


if __name__ == "__main__":
    unittest.main()
