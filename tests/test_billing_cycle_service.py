import unittest
from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from services import billing_cycle_service as cycles
from shared.db import Base, BillingCycle, Payment, PaymentCustomer, PaymentMethod, Subscription
from shared.errors import InvalidStateError, NotFoundError


class FakeGateway:
    def __init__(self, fail_payment=False):
        self.fail_payment = fail_payment
        self.invoices = []
        self.payments = []

    def generate_invoice(self, *, stripe_customer_id, amount, currency, description, metadata=None):
        invoice_id = f"in_{len(self.invoices) + 1}"
        self.invoices.append({"customer": stripe_customer_id, "amount": amount, "description": description, "metadata": metadata})
        return {"invoiceId": invoice_id, "status": "open", "amountDue": int(amount * 100)}

    def process_payment(self, *, invoice_id, payment_method_id):
        if self.fail_payment:
            raise RuntimeError("card_declined")
        self.payments.append((invoice_id, payment_method_id))
        return {"paymentId": f"pi_{invoice_id}", "status": "paid", "receiptUrl": "https://pay.example.com/r"}


class BillingCycleServiceTests(unittest.TestCase):
    def setUp(self):
        engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(bind=engine)
        self.Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
        self.db = self.Session()
        self.subscription = Subscription(
            tenant_id="tenant-a",
            company_id="co-1",
            plan_id="pro",
            plan_name="Pro",
            status="active",
            start_date=datetime(2026, 1, 31),
            billing_cycle="monthly",
            price=49.0,
            currency="USD",
        )
        self.db.add(self.subscription)
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def _add_payment_method(self):
        customer = PaymentCustomer(tenant_id="tenant-a", company_id="co-1", stripe_customer_id="cus_123")
        self.db.add(customer)
        self.db.commit()
        self.db.add(PaymentMethod(customer_id=customer.id, stripe_payment_method_id="pm_123", is_default=True))
        self.db.commit()

    def test_next_cycle_dates_clamp_month_end(self):
        dates = cycles.calculate_next_cycle_dates(datetime(2026, 1, 31), "monthly")
        self.assertEqual(dates["cycleStart"], datetime(2026, 2, 1))
        self.assertEqual(dates["cycleEnd"], datetime(2026, 2, 28))
        self.assertEqual(dates["dueDate"], dates["cycleStart"])
        annual = cycles.calculate_next_cycle_dates(datetime(2026, 3, 15), "annual")
        self.assertEqual(annual["cycleEnd"], datetime(2027, 3, 15))

    def test_generate_chains_from_last_cycle(self):
        created = cycles.generate_billing_cycles(self.db, self.subscription.id, count=2)
        self.assertEqual(len(created), 2)
        self.assertEqual(created[0].cycle_end_date, datetime(2026, 2, 28))
        self.assertEqual(created[1].cycle_start_date, datetime(2026, 3, 1))
        self.assertEqual(created[1].cycle_end_date, datetime(2026, 3, 28))
        self.assertEqual(created[0].amount, 49.0)
        self.assertEqual(cycles.serialize_billing_cycle(created[0])["metadata"], {"planId": "pro", "planName": "Pro"})

        more = cycles.generate_billing_cycles(self.db, self.subscription.id)
        self.assertEqual(more[0].cycle_start_date, datetime(2026, 3, 29))

    def test_generate_rejects_cancelled_or_foreign_subscription(self):
        with self.assertRaises(NotFoundError):
            cycles.generate_billing_cycles(self.db, self.subscription.id, tenant_id="tenant-b")
        self.subscription.status = "cancelled"
        self.db.commit()
        with self.assertRaises(InvalidStateError):
            cycles.generate_billing_cycles(self.db, self.subscription.id)

    def test_process_due_cycle_charges_default_method(self):
        self._add_payment_method()
        cycle = cycles.generate_billing_cycles(self.db, self.subscription.id)[0]
        gateway = FakeGateway()

        processed = cycles.process_pending_billing_cycles(self.db, gateway=gateway, now=datetime(2026, 2, 2))
        self.assertEqual(processed, [cycle.id])
        self.assertEqual(gateway.payments, [("in_1", "pm_123")])
        self.assertIn("2026-02-01 to 2026-02-28", gateway.invoices[0]["description"])

        stored = cycles.get_billing_cycle(self.db, cycle.id)
        self.assertEqual(stored.status, "completed")
        self.assertEqual(stored.payment_attempts, 1)
        self.assertEqual(stored.invoice_id, "in_1")
        payment = self.db.query(Payment).one()
        self.assertEqual(payment.stripe_payment_intent_id, "pi_in_1")

    def test_cycles_not_yet_due_are_skipped(self):
        self._add_payment_method()
        cycles.generate_billing_cycles(self.db, self.subscription.id)
        processed = cycles.process_pending_billing_cycles(self.db, gateway=FakeGateway(), now=datetime(2026, 1, 15))
        self.assertEqual(processed, [])

    def test_missing_payment_method_fails_cycle(self):
        cycle = cycles.generate_billing_cycles(self.db, self.subscription.id)[0]
        cycles.process_pending_billing_cycles(self.db, gateway=FakeGateway(), now=datetime(2026, 2, 2))
        stored = cycles.get_billing_cycle(self.db, cycle.id)
        self.assertEqual(stored.status, "failed")
        self.assertEqual(cycles.serialize_billing_cycle(stored)["metadata"]["error"], "Customer not found")

    def test_gateway_error_fails_cycle_and_retry_recovers(self):
        self._add_payment_method()
        cycle = cycles.generate_billing_cycles(self.db, self.subscription.id)[0]
        cycles.process_pending_billing_cycles(self.db, gateway=FakeGateway(fail_payment=True), now=datetime(2026, 2, 2))
        failed = cycles.get_billing_cycle(self.db, cycle.id)
        self.assertEqual(failed.status, "failed")
        self.assertEqual(cycles.serialize_billing_cycle(failed)["metadata"]["error"], "card_declined")

        self.assertTrue(cycles.retry_billing_cycle(self.db, cycle.id, gateway=FakeGateway()))
        recovered = cycles.get_billing_cycle(self.db, cycle.id)
        self.assertEqual(recovered.status, "completed")
        self.assertEqual(recovered.payment_attempts, 2)

    def test_inactive_subscription_cancels_cycle(self):
        cycle = cycles.generate_billing_cycles(self.db, self.subscription.id)[0]
        self.subscription.status = "past_due"
        self.db.commit()
        cycles.process_pending_billing_cycles(self.db, gateway=FakeGateway(), now=datetime(2026, 2, 2))
        self.assertEqual(cycles.get_billing_cycle(self.db, cycle.id).status, "cancelled")

    def test_cancel_and_retry_guard_statuses(self):
        cycle = cycles.generate_billing_cycles(self.db, self.subscription.id)[0]
        with self.assertRaises(InvalidStateError):
            cycles.retry_billing_cycle(self.db, cycle.id, gateway=FakeGateway())
        cancelled = cycles.cancel_billing_cycle(self.db, cycle.id, "customer request")
        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(cycles.serialize_billing_cycle(cancelled)["metadata"]["cancellationReason"], "customer request")
        with self.assertRaises(InvalidStateError):
            cycles.cancel_billing_cycle(self.db, cycle.id, "again")
        with self.assertRaises(NotFoundError):
            cycles.cancel_billing_cycle(self.db, 9999, "missing")

    def test_current_and_upcoming_cycles(self):
        created = cycles.generate_billing_cycles(self.db, self.subscription.id, count=3)
        current = cycles.get_current_billing_cycle(self.db, self.subscription.id, now=datetime(2026, 3, 10))
        self.assertEqual(current.id, created[1].id)
        upcoming = cycles.get_upcoming_billing_cycles(self.db, "co-1", 5, now=datetime(2026, 3, 10))
        self.assertEqual([item.id for item in upcoming], [created[2].id])
        self.assertEqual(cycles.get_upcoming_billing_cycles(self.db, "co-1", tenant_id="tenant-b", now=datetime(2026, 1, 1)), [])

    def test_unknown_status_rejected(self):
        cycle = cycles.generate_billing_cycles(self.db, self.subscription.id)[0]
        with self.assertRaises(InvalidStateError):
            cycles.update_billing_cycle_status(self.db, cycle.id, "lost")
        self.assertIsInstance(cycle, BillingCycle)


if __name__ == "__main__":
    unittest.main()
