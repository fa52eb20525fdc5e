import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")

import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import auth, crud, errors, models, schemas
from database import atomic, create_db_engine, init_db
from sessions import InMemorySessionStore


class CrudTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = create_db_engine("sqlite://", poolclass=StaticPool)
        init_db(self.engine)
        self.db = Session(self.engine)
        self.alice = crud.create_user(self.db, schemas.UserCreate(email="a@x.com", password="pw1"))
        self.bob = crud.create_user(self.db, schemas.UserCreate(email="b@x.com", password="pw2"))

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def budget(self, user, **fields):
        data = {"name": "Food", "amount": Decimal("200.00"), "period": models.BudgetPeriod.monthly}
        data.update(fields)
        return crud.create_budget(self.db, user.id, schemas.BudgetCreate(**data))

    def transaction(self, user, **fields):
        fields.setdefault("amount", Decimal("10.00"))
        return crud.create_transaction(self.db, user.id, schemas.TransactionCreate(**fields))


class TestUsers(CrudTestCase):
    def test_email_is_normalized_and_unique(self):
        self.assertEqual(self.alice.email, "a@x.com")
        with self.assertRaises(errors.EmailTaken):
            crud.create_user(self.db, schemas.UserCreate(email="  A@X.COM", password="other"))
        self.assertEqual(self.db.query(models.User).count(), 2)

    def test_rejects_email_without_at(self):
        with self.assertRaises(errors.ValidationError):
            crud.create_user(self.db, schemas.UserCreate(email="nobody", password="pw"))

    def test_authenticate(self):
        self.assertEqual(crud.authenticate_user(self.db, "a@x.com", "pw1").id, self.alice.id)
        self.assertIsNone(crud.authenticate_user(self.db, "a@x.com", "pw2"))
        self.assertIsNone(crud.authenticate_user(self.db, "ghost@x.com", "pw1"))
        self.assertNotEqual(self.alice.password_hash, "pw1")


class TestAuthService(CrudTestCase):
    def setUp(self):
        super().setUp()
        self.store = InMemorySessionStore(ttl_secs=60)

    def test_login_resolves_to_same_user(self):
        record = auth.login(self.db, self.store, "a@x.com", "pw1")
        user = auth.current_user(self.db, self.store, record.id)
        self.assertEqual((user.id, user.email), (self.alice.id, "a@x.com"))

    def test_wrong_password_creates_no_session(self):
        with self.assertRaises(errors.InvalidCredentials):
            auth.login(self.db, self.store, "a@x.com", "nope")
        with self.assertRaises(errors.InvalidCredentials):
            auth.login(self.db, self.store, "ghost@x.com", "pw1")
        self.assertEqual(len(self.store), 0)

    def test_logout_is_final_and_idempotent(self):
        record = auth.login(self.db, self.store, "a@x.com", "pw1")
        auth.logout(self.store, record.id)
        with self.assertRaises(errors.Unauthenticated):
            auth.current_user(self.db, self.store, record.id)
        auth.logout(self.store, record.id)
        auth.logout(self.store, None)

    def test_missing_session(self):
        with self.assertRaises(errors.Unauthenticated):
            auth.current_user(self.db, self.store, None)

    def test_session_of_missing_user_is_dropped(self):
        record = self.store.create(424242)
        with self.assertRaises(errors.Unauthenticated):
            auth.current_user(self.db, self.store, record.id)
        self.assertIsNone(self.store.resolve(record.id))


class TestBudgetOwnership(CrudTestCase):
    def test_foreign_budget_is_forbidden_but_looks_missing(self):
        budget = self.budget(self.alice)
        with self.assertRaises(errors.Forbidden) as foreign:
            crud.get_budget(self.db, self.bob.id, budget.id)
        with self.assertRaises(errors.NotFound) as missing:
            crud.get_budget(self.db, self.bob.id, budget.id + 100)
        self.assertNotIsInstance(missing.exception, errors.Forbidden)
        self.assertEqual(foreign.exception.message, missing.exception.message)
        self.assertEqual(foreign.exception.status_code, missing.exception.status_code)

    def test_foreign_update_and_delete_leave_row_untouched(self):
        budget = self.budget(self.alice)
        with self.assertRaises(errors.NotFound):
            crud.update_budget(self.db, self.bob.id, budget.id, schemas.BudgetUpdate(amount=Decimal("1.00")))
        with self.assertRaises(errors.NotFound):
            crud.delete_budget(self.db, self.bob.id, budget.id)
        self.db.expire_all()
        row = crud.get_budget(self.db, self.alice.id, budget.id)
        self.assertEqual(row.amount, Decimal("200.00"))

    def test_lists_are_scoped(self):
        self.budget(self.alice, name="Food")
        self.budget(self.bob, name="Rent")
        self.assertEqual([b.name for b in crud.list_budgets(self.db, self.alice.id)], ["Food"])
        self.assertEqual([b.name for b in crud.list_budgets(self.db, self.bob.id)], ["Rent"])

    def test_patch_semantics(self):
        budget = self.budget(self.alice)
        updated = crud.update_budget(
            self.db, self.alice.id, budget.id, schemas.BudgetUpdate(period=models.BudgetPeriod.yearly)
        )
        self.assertEqual(updated.period, models.BudgetPeriod.yearly)
        self.assertEqual(updated.name, "Food")
        self.assertEqual(updated.amount, Decimal("200.00"))
        with self.assertRaises(errors.ValidationError):
            crud.update_budget(self.db, self.alice.id, budget.id, schemas.BudgetUpdate(amount=None))


class TestReferentialPolicy(CrudTestCase):
    def test_delete_budget_nulls_out_transactions(self):
        budget = self.budget(self.alice)
        linked = self.transaction(self.alice, budget_id=budget.id)
        crud.delete_budget(self.db, self.alice.id, budget.id)

        self.db.expire_all()
        txn = crud.get_transaction(self.db, self.alice.id, linked.id)
        self.assertIsNone(txn.budget_id)
        self.assertEqual(txn.user_id, self.alice.id)
        self.assertIsNone(self.db.get(models.Budget, budget.id))

    def test_foreign_budget_link_fails_without_insert(self):
        budget = self.budget(self.bob)
        with self.assertRaises(errors.Forbidden):
            self.transaction(self.alice, budget_id=budget.id)
        self.assertEqual(crud.list_transactions(self.db, self.alice.id), [])
        self.assertEqual(self.db.query(models.Transaction).count(), 0)


class TestTransactions(CrudTestCase):
    def test_aware_timestamps_are_stored_as_utc(self):
        aware = datetime(2025, 1, 5, 14, 0, tzinfo=timezone.utc)
        txn = self.transaction(self.alice, occurred_at=aware)
        self.assertEqual(txn.occurred_at, datetime(2025, 1, 5, 14, 0))

    def test_date_filters_are_inclusive(self):
        early = self.transaction(self.alice, occurred_at=datetime(2025, 1, 1, 0, 0))
        late = self.transaction(self.alice, occurred_at=datetime(2025, 1, 31, 23, 59))
        filters = crud.TransactionFilters(start=date(2025, 1, 1), end=date(2025, 1, 31))
        found = crud.list_transactions(self.db, self.alice.id, filters)
        self.assertEqual([t.id for t in found], [late.id, early.id])

    def test_start_after_end(self):
        filters = crud.TransactionFilters(start=date(2025, 2, 1), end=date(2025, 1, 1))
        with self.assertRaises(errors.ValidationError):
            crud.list_transactions(self.db, self.alice.id, filters)

    def test_summary_uses_decimal_arithmetic(self):
        budget = self.budget(self.alice, amount=Decimal("1.00"))
        self.transaction(self.alice, budget_id=budget.id, amount=Decimal("0.10"))
        self.transaction(self.alice, budget_id=budget.id, amount=Decimal("0.20"))
        summary = crud.budget_summary(self.db, self.alice.id, budget.id)
        self.assertEqual(summary.spent, Decimal("0.30"))
        self.assertEqual(summary.remaining, Decimal("0.70"))
        self.assertEqual(summary.transaction_count, 2)

    def test_summary_of_empty_budget(self):
        budget = self.budget(self.alice)
        summary = crud.budget_summary(self.db, self.alice.id, budget.id)
        self.assertEqual(summary.spent, Decimal("0.00"))
        self.assertEqual(summary.remaining, Decimal("200.00"))
        self.assertEqual(summary.transaction_count, 0)


class TestAtomic(CrudTestCase):
    def test_rolls_back_on_error(self):
        with self.assertRaises(RuntimeError):
            with atomic(self.db):
                self.db.add(models.Budget(user_id=self.alice.id, name="Temp", amount=Decimal("1.00"),
                                          period=models.BudgetPeriod.weekly))
                self.db.flush()
                raise RuntimeError("boom")
        self.assertEqual(crud.list_budgets(self.db, self.alice.id), [])

    def test_store_failure_becomes_store_unavailable(self):
        with self.assertRaises(errors.StoreUnavailable):
            with atomic(self.db):
                raise OperationalError("UPDATE budgets", {}, Exception("gone away"))


if __name__ == "__main__":
    unittest.main()
