import unittest
from datetime import datetime, timezone

from services import validation_service as v
from services.crm_store import create_entity, reset_memory_store_for_tests
from shared.errors import NotFoundError, ValidationFailedError


class ValidationRuleTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        v.reset_schemas_for_tests()

    def test_required_and_optional_rules(self):
        schema = {"name": [v.required(), v.max_length(5)], "email": [v.email()]}
        result = v.validate({"name": "", "email": ""}, schema)
        self.assertFalse(result["isValid"])
        self.assertEqual(result["errors"], [{"field": "name", "message": "Field is required", "rule": "required"}])

        self.assertTrue(v.validate({"name": "Ada"}, schema)["isValid"])

    def test_first_failing_rule_stops_the_field(self):
        schema = {"code": [v.min_length(3), v.pattern(r"^[A-Z]+$", "Uppercase only")]}
        result = v.validate({"code": "a"}, schema)
        self.assertEqual(len(result["errors"]), 1)
        self.assertEqual(result["errors"][0]["rule"], "minLength")

    def test_format_rules(self):
        schema = {
            "email": [v.email()],
            "phone": [v.phone()],
            "site": [v.url()],
            "loose": [v.url(require_protocol=False)],
        }
        good = {"email": "ada@example.com", "phone": "+15551234567", "site": "https://example.com/a", "loose": "example.com"}
        self.assertTrue(v.validate(good, schema)["isValid"])
        bad = {"email": "nope", "phone": "12", "site": "example.com", "loose": "not a url"}
        fields = {error["field"] for error in v.validate(bad, schema)["errors"]}
        self.assertEqual(fields, {"email", "phone", "site", "loose"})

    def test_numeric_and_bounds(self):
        schema = {
            "count": [v.numeric()],
            "price": [v.numeric(allow_decimals=True), v.min_value(0), v.max_value(100)],
        }
        self.assertTrue(v.validate({"count": 3, "price": "9.5"}, schema)["isValid"])
        errors = v.validate({"count": "3.5", "price": 120}, schema)["errors"]
        self.assertEqual([error["rule"] for error in errors], ["numeric", "maxValue"])
        self.assertFalse(v.validate({"count": True}, schema)["isValid"])

    def test_enum_and_custom(self):
        schema = {
            "status": [v.one_of(["new", "won"])],
            "even": [v.custom(lambda value, _data: value % 2 == 0, "Must be even")],
        }
        errors = v.validate({"status": "lost", "even": 3}, schema)["errors"]
        self.assertEqual(errors[0]["message"], "Value must be one of: new, won")
        self.assertEqual(errors[1]["message"], "Must be even")

    def test_nested_and_array_errors_are_prefixed(self):
        address = {"city": [v.required()]}
        contact = {"email": [v.required(), v.email()]}
        schema = {
            "address": [v.nested(address)],
            "contacts": [v.array(contact, min_items=1, max_items=2)],
        }
        result = v.validate({"address": {}, "contacts": [{"email": "a@example.com"}, {"email": "bad"}]}, schema)
        self.assertEqual([error["field"] for error in result["errors"]], ["address.city", "contacts[1].email"])

        too_many = v.validate({"contacts": [{"email": "a@example.com"}] * 3}, schema)
        self.assertEqual(too_many["errors"][0]["message"], "Array must have at most 2 items")

    def test_tenant_mismatch_short_circuits(self):
        schema = {"name": [v.required()]}
        result = v.validate({"tenantId": "t2"}, schema, "t1")
        self.assertEqual(result["errors"], [{"field": "tenantId", "message": "Tenant ID mismatch with current context", "rule": "tenantMatch"}])

    def test_unique_ignores_own_document(self):
        existing = create_entity("tags", "t1", {"name": "VIP"})
        schema = {"name": [v.unique("tags", ignore_case=True)]}
        self.assertFalse(v.validate({"name": "vip"}, schema, "t1")["isValid"])
        self.assertTrue(v.validate({"id": existing["id"], "name": "VIP"}, schema, "t1")["isValid"])
        self.assertTrue(v.validate({"name": "vip"}, schema, "t2")["isValid"])

    def test_reference_exists(self):
        customer = create_entity("customers", "t1", {"name": "Acme", "tenantId": "t1"})
        schema = {"customerId": [v.reference_exists("customers")]}
        self.assertTrue(v.validate({"customerId": customer["id"]}, schema, "t1")["isValid"])
        self.assertFalse(v.validate({"customerId": customer["id"]}, schema, "t2")["isValid"])
        self.assertFalse(v.validate({"customerId": "missing"}, schema, "t1")["isValid"])

    def test_date_range(self):
        schema = {
            "start": [v.date_range(min_date=datetime(2026, 1, 1, tzinfo=timezone.utc))],
            "end": [v.date_range(after_field="start")],
        }
        self.assertTrue(v.validate({"start": "2026-02-01T00:00:00Z", "end": "2026-03-01T00:00:00Z"}, schema)["isValid"])
        errors = v.validate({"start": "2025-12-31T00:00:00Z", "end": "2025-12-01T00:00:00Z"}, schema)["errors"]
        self.assertEqual([error["field"] for error in errors], ["start", "end"])
        invalid = v.validate({"start": "not a date"}, schema)["errors"][0]
        self.assertEqual(invalid["message"], "Invalid date format")


class SchemaRegistryTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        v.reset_schemas_for_tests()

    def test_registry_is_tenant_scoped(self):
        v.register_schema("leads", v.create_default_schema("lead"), "t1")
        self.assertEqual(v.get_registered_collections("t1"), ["leads"])
        self.assertEqual(v.get_registered_collections("t2"), [])
        self.assertIsNone(v.get_schema("leads", "t2"))
        with self.assertRaises(NotFoundError):
            v.validate_for_collection("leads", {}, "t2")

    def test_validate_for_collection_uses_registered_schema(self):
        v.register_schema("deals", v.create_default_schema("deal"), "t1")
        result = v.validate_for_collection("deals", {"tenantId": "t1", "name": "Big deal"}, "t1")
        self.assertFalse(result["isValid"])
        self.assertIn("customerId", {error["field"] for error in result["errors"]})

    def test_unknown_model_type_has_empty_schema(self):
        self.assertEqual(v.create_default_schema("widget"), {})

    def test_validated_decorator(self):
        @v.validated({"title": [v.required()]})
        def create(payload):
            return payload["title"]

        self.assertEqual(create({"title": "ok"}), "ok")
        with self.assertRaises(ValidationFailedError) as ctx:
            create({})
        self.assertEqual(ctx.exception.details[0]["field"], "title")


if __name__ == "__main__":
    unittest.main()
