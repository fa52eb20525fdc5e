import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")

import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import crud, main, schemas
from auth import get_db, get_session_store
from database import create_db_engine, init_db
from main import app
from sessions import InMemorySessionStore


class ApiTestCase(unittest.TestCase):
    """Fresh in-memory database and session store for every test."""

    def setUp(self):
        self.engine = create_db_engine("sqlite://", poolclass=StaticPool)
        init_db(self.engine)
        self.TestingSessionLocal = sessionmaker(autoflush=False, bind=self.engine)
        self.store = InMemorySessionStore(ttl_secs=3600)

        def override_get_db():
            db = self.TestingSessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_session_store] = lambda: self.store
        self.cookie_name = main.settings.session_cookie

        self.alice_id = self.create_user("a@x.com", "pw1")
        self.bob_id = self.create_user("b@x.com", "pw2")
        self.client = self.login_client("a@x.com", "pw1")
        self.other = self.login_client("b@x.com", "pw2")

    def tearDown(self):
        app.dependency_overrides.clear()
        self.engine.dispose()

    def create_user(self, email, password):
        with self.TestingSessionLocal() as db:
            return crud.create_user(db, schemas.UserCreate(email=email, password=password)).id

    def login_client(self, email, password):
        client = TestClient(app)
        response = client.post("/auth/login", json={"email": email, "password": password})
        self.assertEqual(response.status_code, 200)
        return client

    def create_budget(self, client=None, **overrides):
        payload = {"name": "Food", "amount": "200.00", "period": "monthly"}
        payload.update(overrides)
        response = (client or self.client).post("/api/budgets", json=payload)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def create_transaction(self, client=None, **payload):
        payload.setdefault("amount", "10.00")
        response = (client or self.client).post("/api/transactions", json=payload)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()


class TestSessionLifecycle(ApiTestCase):
    def test_login_session_logout_scenario(self):
        client = TestClient(app)
        response = client.post("/auth/login", json={"email": "a@x.com", "password": "pw1"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"userId": 1, "email": "a@x.com"})
        self.assertIn(self.cookie_name, response.cookies)

        response = client.get("/api/session")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"userId": 1, "email": "a@x.com"})

        response = client.post("/api/logout")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True})

        response = client.get("/api/session")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"message": "Not authenticated"})

    def test_failed_login(self):
        client = TestClient(app)
        sessions_before = len(self.store)
        response = client.post("/auth/login", json={"email": "a@x.com", "password": "wrong"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"message": "Invalid email or password"})
        self.assertNotIn(self.cookie_name, response.cookies)
        self.assertEqual(len(self.store), sessions_before)

        response = client.post("/auth/login", json={"email": "nobody@x.com", "password": "pw1"})
        self.assertEqual(response.status_code, 401)

    def test_login_email_is_case_insensitive(self):
        client = TestClient(app)
        response = client.post("/auth/login", json={"email": " A@X.com ", "password": "pw1"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["userId"], self.alice_id)

    def test_replayed_cookie_after_logout_is_rejected(self):
        client = TestClient(app)
        client.post("/auth/login", json={"email": "a@x.com", "password": "pw1"})
        old_cookie = client.cookies.get(self.cookie_name)
        self.assertEqual(client.post("/api/logout").status_code, 200)

        replay = TestClient(app)
        replay.cookies.set(self.cookie_name, old_cookie)
        self.assertEqual(replay.get("/api/session").status_code, 401)
        self.assertEqual(replay.get("/api/budgets").status_code, 401)

    def test_logout_without_session_is_ok(self):
        response = TestClient(app).post("/api/logout")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True})

    def test_forged_cookie_is_rejected(self):
        client = TestClient(app)
        client.cookies.set(self.cookie_name, "not-a-signed-session")
        self.assertEqual(client.get("/api/session").status_code, 401)

    def test_relogin_replaces_previous_session(self):
        client = TestClient(app)
        client.post("/auth/login", json={"email": "a@x.com", "password": "pw1"})
        first = client.cookies.get(self.cookie_name)
        client.post("/auth/login", json={"email": "a@x.com", "password": "pw1"})

        replay = TestClient(app)
        replay.cookies.set(self.cookie_name, first)
        self.assertEqual(replay.get("/api/session").status_code, 401)
        self.assertEqual(client.get("/api/session").status_code, 200)


class TestRegister(ApiTestCase):
    def test_register_new_user(self):
        response = TestClient(app).post(
            "/auth/register",
            json={"name": "New User", "email": "new@example.com", "password": "newpassword"},
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["email"], "new@example.com")

        with self.TestingSessionLocal() as db:
            user = crud.get_user_by_email(db, "new@example.com")
            self.assertIsNotNone(user)
            self.assertNotEqual(user.password_hash, "newpassword")
            self.assertTrue(crud.pwd_context.verify("newpassword", user.password_hash))

    def test_register_existing_user(self):
        response = TestClient(app).post(
            "/auth/register", json={"email": "A@x.com", "password": "whatever"}
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json(), {"message": "Email already registered"})


class TestBudgets(ApiTestCase):
    def test_requires_session(self):
        anonymous = TestClient(app)
        self.assertEqual(anonymous.get("/api/budgets").status_code, 401)
        response = anonymous.post("/api/budgets", json={"name": "Food", "amount": "1.00", "period": "monthly"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"message": "Not authenticated"})

    def test_create_then_list(self):
        created = self.create_budget()
        self.assertEqual(created["name"], "Food")
        self.assertEqual(created["amount"], "200.00")
        self.assertEqual(created["period"], "monthly")
        self.assertEqual(created["userId"], self.alice_id)

        listed = self.client.get("/api/budgets").json()
        matches = [b for b in listed if b["id"] == created["id"]]
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0], created)

    def test_list_is_in_creation_order(self):
        first = self.create_budget(name="Rent")
        second = self.create_budget(name="Fun")
        ids = [b["id"] for b in self.client.get("/api/budgets").json()]
        self.assertEqual(ids, [first["id"], second["id"]])

    def test_update_changes_only_patched_fields(self):
        created = self.create_budget()
        response = self.client.put(f"/api/budgets/{created['id']}", json={"amount": "250.50"})
        self.assertEqual(response.status_code, 200)

        reread = self.client.get(f"/api/budgets/{created['id']}").json()
        self.assertEqual(reread["amount"], "250.50")
        self.assertEqual(reread["name"], created["name"])
        self.assertEqual(reread["period"], created["period"])

    def test_update_rejects_null(self):
        created = self.create_budget()
        response = self.client.put(f"/api/budgets/{created['id']}", json={"name": None})
        self.assertEqual(response.status_code, 422)
        self.assertIn("message", response.json())

    def test_validation(self):
        for payload in (
            {"name": "Food", "amount": "-5.00", "period": "monthly"},
            {"name": "Food", "amount": "1.234", "period": "monthly"},
            {"name": "Food", "amount": "10.00", "period": "daily"},
            {"name": "", "amount": "10.00", "period": "monthly"},
            {"name": "Food", "amount": "abc", "period": "monthly"},
        ):
            response = self.client.post("/api/budgets", json=payload)
            self.assertEqual(response.status_code, 422, payload)
            self.assertIn("message", response.json())
        self.assertEqual(self.client.get("/api/budgets").json(), [])

    def test_blank_name_is_rejected(self):
        response = self.client.post("/api/budgets", json={"name": "   ", "amount": "1.00", "period": "monthly"})
        self.assertEqual(response.status_code, 422)
        self.assertIn("message", response.json())
        self.assertEqual(self.client.get("/api/budgets").json(), [])

        created = self.create_budget(name="  Rent  ")
        self.assertEqual(created["name"], "Rent")
        response = self.client.put(f"/api/budgets/{created['id']}", json={"name": "   "})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(self.client.get(f"/api/budgets/{created['id']}").json()["name"], "Rent")

    def test_out_of_range_id_is_not_found(self):
        for budget_id in ("99999999999999999999", "0"):
            url = f"/api/budgets/{budget_id}"
            for response in (
                self.client.get(url),
                self.client.put(url, json={"amount": "1.00"}),
                self.client.delete(url),
                self.client.get(f"{url}/summary"),
            ):
                self.assertEqual(response.status_code, 404)
                self.assertEqual(response.json(), {"message": "Budget not found"})

    def test_other_user_cannot_touch_budget(self):
        created = self.create_budget()
        budget_url = f"/api/budgets/{created['id']}"

        self.assertEqual(self.other.get("/api/budgets").json(), [])
        for response in (
            self.other.get(budget_url),
            self.other.put(budget_url, json={"amount": "1.00"}),
            self.other.delete(budget_url),
            self.other.get(f"{budget_url}/summary"),
        ):
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json(), {"message": "Budget not found"})

        self.assertEqual(self.client.get(budget_url).json(), created)

    def test_foreign_and_missing_budget_look_the_same(self):
        created = self.create_budget()
        foreign = self.other.delete(f"/api/budgets/{created['id']}")
        missing = self.other.delete("/api/budgets/9999")
        self.assertEqual(foreign.status_code, missing.status_code)
        self.assertEqual(foreign.json(), missing.json())

    def test_delete(self):
        created = self.create_budget()
        response = self.client.delete(f"/api/budgets/{created['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True})
        self.assertEqual(self.client.get(f"/api/budgets/{created['id']}").status_code, 404)

    def test_delete_unlinks_transactions(self):
        budget = self.create_budget()
        txn = self.create_transaction(budgetId=budget["id"], amount="12.00")
        self.client.delete(f"/api/budgets/{budget['id']}")

        reread = self.client.get(f"/api/transactions/{txn['id']}")
        self.assertEqual(reread.status_code, 200)
        self.assertIsNone(reread.json()["budgetId"])
        self.assertEqual(reread.json()["amount"], "12.00")

    def test_summary(self):
        budget = self.create_budget(amount="100.00")
        self.create_transaction(budgetId=budget["id"], amount="10.10")
        self.create_transaction(budgetId=budget["id"], amount="20.20")
        self.create_transaction(amount="99.99")

        response = self.client.get(f"/api/budgets/{budget['id']}/summary")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {
                "budgetId": budget["id"],
                "allocated": "100.00",
                "spent": "30.30",
                "remaining": "69.70",
                "transactionCount": 2,
            },
        )


class TestTransactions(ApiTestCase):
    def test_create_and_read(self):
        budget = self.create_budget()
        txn = self.create_transaction(
            budgetId=budget["id"],
            amount="42.50",
            description="Groceries",
            occurredAt="2025-01-05T12:00:00",
        )
        self.assertEqual(txn["budgetId"], budget["id"])
        self.assertEqual(txn["amount"], "42.50")
        self.assertEqual(txn["description"], "Groceries")
        self.assertEqual(txn["occurredAt"], "2025-01-05T12:00:00")
        self.assertIn("updatedAt", txn)
        self.assertEqual(self.client.get(f"/api/transactions/{txn['id']}").json(), txn)

    def test_default_timestamp(self):
        txn = self.create_transaction(amount="3.00")
        self.assertTrue(txn["occurredAt"])
        self.assertIsNone(txn["budgetId"])

    def test_cannot_link_to_other_users_budget(self):
        foreign_budget = self.create_budget(client=self.other)
        response = self.client.post(
            "/api/transactions",
            json={"amount": "5.00", "budgetId": foreign_budget["id"], "userId": self.bob_id},
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"message": "Budget not found"})
        self.assertEqual(self.client.get("/api/transactions").json(), [])

        own = self.create_transaction(amount="5.00")
        response = self.client.put(f"/api/transactions/{own['id']}", json={"budgetId": foreign_budget["id"]})
        self.assertEqual(response.status_code, 404)
        self.assertIsNone(self.client.get(f"/api/transactions/{own['id']}").json()["budgetId"])

    def test_body_user_id_is_ignored(self):
        txn = self.create_transaction(amount="5.00", userId=self.bob_id)
        self.assertEqual(txn["userId"], self.alice_id)
        self.assertEqual(self.other.get("/api/transactions").json(), [])

    def test_other_user_cannot_touch_transaction(self):
        txn = self.create_transaction(amount="5.00")
        url = f"/api/transactions/{txn['id']}"
        for response in (
            self.other.get(url),
            self.other.put(url, json={"amount": "1.00"}),
            self.other.delete(url),
        ):
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json(), {"message": "Transaction not found"})
        self.assertEqual(self.client.get(url).json()["amount"], "5.00")

    def test_update_and_unlink(self):
        budget = self.create_budget()
        txn = self.create_transaction(budgetId=budget["id"], amount="5.00", description="Lunch")
        response = self.client.put(
            f"/api/transactions/{txn['id']}", json={"amount": "6.25", "budgetId": None}
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["amount"], "6.25")
        self.assertIsNone(body["budgetId"])
        self.assertEqual(body["description"], "Lunch")

    def test_update_rejects_null_amount(self):
        txn = self.create_transaction(amount="5.00")
        response = self.client.put(f"/api/transactions/{txn['id']}", json={"amount": None})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json(), {"message": "amount cannot be null"})

    def test_delete(self):
        txn = self.create_transaction(amount="5.00")
        response = self.client.delete(f"/api/transactions/{txn['id']}")
        self.assertEqual(response.json(), {"ok": True})
        self.assertEqual(self.client.get(f"/api/transactions/{txn['id']}").status_code, 404)

    def test_filters(self):
        food = self.create_budget(name="Food")
        rent = self.create_budget(name="Rent", amount="900.00")
        jan = self.create_transaction(budgetId=food["id"], occurredAt="2025-01-05T08:00:00")
        feb = self.create_transaction(budgetId=rent["id"], occurredAt="2025-02-01T23:59:00")
        mar = self.create_transaction(budgetId=food["id"], occurredAt="2025-03-10T10:00:00")
        self.create_transaction(client=self.other, occurredAt="2025-02-01T10:00:00")

        ids = lambda params: [t["id"] for t in self.client.get("/api/transactions", params=params).json()]

        self.assertEqual(ids({}), [mar["id"], feb["id"], jan["id"]])
        self.assertEqual(ids({"budgetId": food["id"]}), [mar["id"], jan["id"]])
        self.assertEqual(ids({"start": "2025-01-06", "end": "2025-02-01"}), [feb["id"]])
        self.assertEqual(ids({"start": "2025-02-02"}), [mar["id"]])
        self.assertEqual(ids({"end": "2025-01-05", "budgetId": food["id"]}), [jan["id"]])

    def test_filter_on_foreign_budget_returns_nothing(self):
        foreign_budget = self.create_budget(client=self.other)
        self.create_transaction(client=self.other, budgetId=foreign_budget["id"])
        response = self.client.get("/api/transactions", params={"budgetId": foreign_budget["id"]})
        self.assertEqual(response.json(), [])

    def test_bad_date_range(self):
        response = self.client.get("/api/transactions", params={"start": "2025-03-01", "end": "2025-01-01"})
        self.assertEqual(response.status_code, 422)
        response = self.client.get("/api/transactions", params={"start": "yesterday"})
        self.assertEqual(response.status_code, 422)
        self.assertIn("message", response.json())

    def test_out_of_range_ids(self):
        huge = 10**20
        response = self.client.get(f"/api/transactions/{huge}")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"message": "Transaction not found"})

        response = self.client.post("/api/transactions", json={"amount": "5.00", "budgetId": huge})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"message": "Budget not found"})

        own = self.create_transaction(amount="5.00")
        response = self.client.put(f"/api/transactions/{own['id']}", json={"budgetId": huge})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"message": "Budget not found"})

        response = self.client.get("/api/transactions", params={"budgetId": huge})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])


class TestStoreFailures(ApiTestCase):
    def test_store_failure_is_generic_503(self):
        failure = OperationalError("SELECT * FROM budgets WHERE secret", {}, Exception("connection lost"))
        with mock.patch.object(crud, "list_budgets", side_effect=failure):
            response = self.client.get("/api/budgets")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json(), {"message": "Service temporarily unavailable"})
        self.assertNotIn("SELECT", response.text)


class TestPages(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        (root / "auth.html").write_text("<h1>auth</h1>")
        (root / "budget_plan.html").write_text("<h1>plan</h1>")
        (root / "secret.txt").write_text("nope")
        patcher = mock.patch.object(main.settings, "static_dir", root)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self.tmp.cleanup)
        self.client = TestClient(app)

    def test_known_page(self):
        response = self.client.get("/budget_plan.html")
        self.assertEqual(response.status_code, 200)
        self.assertIn("plan", response.text)

    def test_unknown_page_falls_back_to_default(self):
        for path in ("/", "/secret.txt", "/whatever"):
            response = self.client.get(path)
            self.assertEqual(response.status_code, 200)
            self.assertIn("auth", response.text)

    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})


if __name__ == "__main__":
    unittest.main()
