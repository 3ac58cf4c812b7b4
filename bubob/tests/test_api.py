import os
import tempfile
import unittest
import uuid
from decimal import Decimal

_TMP_DIR = tempfile.mkdtemp(prefix="bubob-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/bubob-test.db"
os.environ["PHOTO_STORAGE_DIR"] = os.path.join(_TMP_DIR, "photos")
os.environ["REPORTING_TIMEZONE"] = "Asia/Jakarta"

from fastapi.testclient import TestClient  # noqa: E402

from bubob import main  # noqa: E402


class ApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        main.metadata.create_all(main.engine)
        cls.client = TestClient(main.app)

    def signup(self) -> dict:
        email = f"{uuid.uuid4().hex}@example.com"
        response = self.client.post(
            "/auth/signup", json={"email": email, "password": "rahasia"}
        )
        self.assertEqual(response.status_code, 200, response.text)
        user = response.json()
        self.headers = {"x-user-id": str(user["id"])}
        return user

    def create_account(self, name: str, type: str, opening_balance: str = "0") -> dict:
        response = self.client.post(
            "/accounts",
            json={"name": name, "type": type, "opening_balance": opening_balance},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def add_transaction(self, account_id: int, type: str, amount: str, **extra) -> dict:
        response = self.client.post(
            "/transactions",
            json={"account_id": account_id, "type": type, "amount": amount, **extra},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()


class AuthApiTests(ApiTestCase):
    def test_signup_login_and_duplicates(self) -> None:
        email = f"{uuid.uuid4().hex}@Example.com"
        created = self.client.post("/auth/signup", json={"email": email, "password": "pw"})
        self.assertEqual(created.status_code, 200)
        self.assertEqual(created.json()["email"], email.lower())

        duplicate = self.client.post("/auth/signup", json={"email": email, "password": "pw"})
        self.assertEqual(duplicate.status_code, 409)

        login = self.client.post("/auth/login", json={"email": email, "password": "pw"})
        self.assertEqual(login.status_code, 200)
        self.assertEqual(login.json()["id"], created.json()["id"])

        wrong = self.client.post("/auth/login", json={"email": email, "password": "nope"})
        self.assertEqual(wrong.status_code, 401)

    def test_identity_header_required(self) -> None:
        self.assertEqual(self.client.get("/accounts").status_code, 401)
        self.assertEqual(
            self.client.get("/accounts", headers={"x-user-id": "abc"}).status_code, 400
        )
        self.assertEqual(
            self.client.get("/accounts", headers={"x-user-id": "999999"}).status_code, 404
        )


class SetupApiTests(ApiTestCase):
    def test_setup_is_idempotent(self) -> None:
        self.signup()

        first = self.client.post("/setup", headers=self.headers).json()
        second = self.client.post("/setup", headers=self.headers).json()

        self.assertEqual(first, {"accounts_created": 2, "categories_created": 11})
        self.assertEqual(second, {"accounts_created": 0, "categories_created": 0})
        accounts = self.client.get("/accounts", headers=self.headers).json()
        self.assertEqual(sorted(a["type"] for a in accounts), ["cash", "ewallet"])
        income = self.client.get("/categories?type=income", headers=self.headers).json()
        self.assertEqual([c["name"] for c in income], ["Gaji", "Bonus", "Transfer Masuk"])


class TransactionApiTests(ApiTestCase):
    def setUp(self) -> None:
        self.signup()
        self.cash = self.create_account("Cash", "cash", "100000")

    def test_insert_applies_signed_delta(self) -> None:
        spent = self.add_transaction(self.cash["id"], "expense", "40000", category="Makan")
        earned = self.add_transaction(self.cash["id"], "income", "15000", category="Gaji")

        self.assertEqual(Decimal(spent["account_balance"]), Decimal("60000"))
        self.assertEqual(Decimal(earned["account_balance"]), Decimal("75000"))

        reconciled = self.client.post(
            f"/accounts/{self.cash['id']}/reconcile", headers=self.headers
        ).json()
        self.assertEqual(Decimal(reconciled["balance"]), Decimal("75000"))
        self.assertEqual(Decimal(reconciled["opening_balance"]), Decimal("100000"))

    def test_rejects_invalid_transactions(self) -> None:
        for body in (
            {"account_id": self.cash["id"], "type": "expense", "amount": "0"},
            {"account_id": self.cash["id"], "type": "expense", "amount": "-5"},
            {"account_id": self.cash["id"], "type": "transfer", "amount": "5"},
        ):
            with self.subTest(body=body):
                response = self.client.post("/transactions", json=body, headers=self.headers)
                self.assertEqual(response.status_code, 400)

        missing = self.client.post(
            "/transactions",
            json={"account_id": 987654, "type": "expense", "amount": "5"},
            headers=self.headers,
        )
        self.assertEqual(missing.status_code, 404)

    def test_history_filters(self) -> None:
        self.add_transaction(
            self.cash["id"], "expense", "1000", category="Belanja",
            note="diskon 50%", occurred_at="2024-02-10T08:00:00",
        )
        self.add_transaction(
            self.cash["id"], "expense", "2000", category="Makan",
            note="50 ribu", occurred_at="2024-02-10T21:00:00",
        )
        self.add_transaction(
            self.cash["id"], "income", "3000", category="Gaji",
            occurred_at="2024-02-11T09:00:00",
        )

        search = self.client.get("/transactions?q=50%25", headers=self.headers).json()
        self.assertEqual([t["note"] for t in search], ["diskon 50%"])

        by_type = self.client.get("/transactions?type=income", headers=self.headers).json()
        self.assertEqual([t["category"] for t in by_type], ["Gaji"])

        one_day = self.client.get(
            "/transactions?from=2024-02-10&to=2024-02-10", headers=self.headers
        ).json()
        self.assertEqual([t["category"] for t in one_day], ["Makan", "Belanja"])

        grouped = self.client.get("/transactions/by-day", headers=self.headers).json()
        self.assertEqual([g["date"] for g in grouped], ["2024-02-11", "2024-02-10"])
        self.assertEqual(Decimal(grouped[1]["spent"]), Decimal("3000"))

        bad = self.client.get("/transactions?from=10-02-2024", headers=self.headers)
        self.assertEqual(bad.status_code, 400)

    def test_get_single_transaction(self) -> None:
        created = self.add_transaction(
            self.cash["id"], "expense", "500", occurred_at="2024-03-01T00:30:00+07:00"
        )

        fetched = self.client.get(f"/transactions/{created['id']}", headers=self.headers)

        self.assertEqual(fetched.status_code, 200)
        self.assertTrue(fetched.json()["occurred_at"].startswith("2024-03-01T00:30:00"))
        self.assertEqual(
            self.client.get("/transactions/999999", headers=self.headers).status_code, 404
        )

    def test_account_in_use_cannot_be_deleted(self) -> None:
        self.add_transaction(self.cash["id"], "expense", "10")
        empty = self.create_account("Spare", "other")

        blocked = self.client.delete(f"/accounts/{self.cash['id']}", headers=self.headers)
        deleted = self.client.delete(f"/accounts/{empty['id']}", headers=self.headers)

        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(deleted.status_code, 200)

    def test_photo_upload_and_fetch(self) -> None:
        uploaded = self.client.post(
            "/photos",
            data={"account_id": str(self.cash["id"])},
            files={"file": ("struk.jpg", b"jpeg-bytes", "image/jpeg")},
            headers=self.headers,
        )
        self.assertEqual(uploaded.status_code, 200, uploaded.text)
        photo = uploaded.json()
        self.assertTrue(photo["path"].startswith(f"{self.headers['x-user-id']}/{self.cash['id']}/"))

        txn = self.add_transaction(self.cash["id"], "expense", "10", photo_url=photo["url"])
        self.assertEqual(txn["photo_url"], photo["url"])

        fetched = self.client.get(f"/photos/{photo['path']}")
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.content, b"jpeg-bytes")

        rejected = self.client.post(
            "/photos",
            data={"account_id": str(self.cash["id"])},
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=self.headers,
        )
        self.assertEqual(rejected.status_code, 400)

    def test_photo_is_served_with_image_type(self) -> None:
        uploaded = self.client.post(
            "/photos",
            data={"account_id": str(self.cash["id"])},
            files={"file": ("x.html", b"<script>alert(1)</script>", "image/png")},
            headers=self.headers,
        )
        self.assertEqual(uploaded.status_code, 200, uploaded.text)
        photo = uploaded.json()
        self.assertTrue(photo["path"].endswith(".png"))

        fetched = self.client.get(f"/photos/{photo['path']}")
        self.assertEqual(fetched.status_code, 200)
        self.assertTrue(fetched.headers["content-type"].startswith("image/png"))

    def test_oversized_photo_is_rejected(self) -> None:
        response = self.client.post(
            "/photos",
            data={"account_id": str(self.cash["id"])},
            files={"file": ("big.jpg", b"x" * (main.PHOTO_STORE.max_bytes + 1), "image/jpeg")},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 413)

    def test_dashboard(self) -> None:
        wallet = self.create_account("GoPay", "e-wallet", "25000")
        self.add_transaction(wallet["id"], "expense", "5000")

        body = self.client.get("/dashboard", headers=self.headers).json()

        self.assertEqual(Decimal(body["total_balance"]), Decimal("120000"))
        self.assertEqual(Decimal(body["cash_balance"]), Decimal("100000"))
        self.assertEqual(Decimal(body["ewallet_balance"]), Decimal("20000"))
        self.assertEqual([a["name"] for a in body["top_accounts"]], ["Cash", "GoPay"])
        self.assertEqual(len(body["recent_transactions"]), 1)


class PlanApiTests(ApiTestCase):
    def setUp(self) -> None:
        self.signup()
        self.cash = self.create_account("Cash", "cash", "500000")
        self.wallet = self.create_account("GoPay", "ewallet")
        self.add_transaction(self.cash["id"], "expense", "40000", category="Makan",
                             occurred_at="2024-02-01T00:00:00")
        self.add_transaction(self.wallet["id"], "expense", "50000", category="Transport",
                             occurred_at="2024-02-15T12:00:00")
        self.add_transaction(self.cash["id"], "income", "20000", category="Gaji",
                             occurred_at="2024-02-29T23:59:00")
        self.add_transaction(self.cash["id"], "expense", "99999", category="Makan",
                             occurred_at="2024-03-01T00:00:00")

    def create_plan(self, **body) -> dict:
        response = self.client.post("/plans", json=body, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_monthly_progress_for_all_plans(self) -> None:
        limit = self.create_plan(
            name="Budget Februari", type="expense_limit", amount="100000", start_month="2024-02"
        )
        goal = self.create_plan(
            name="Nabung", type="saving_goal", amount="200000",
            start_month="2024-02-01", account_id=self.cash["id"],
        )

        progress = self.client.get("/plans/progress?month=2024-02", headers=self.headers).json()
        by_id = {p["plan_id"]: p for p in progress}

        self.assertEqual(Decimal(by_id[limit["id"]]["spent"]), Decimal("90000"))
        self.assertEqual(Decimal(by_id[limit["id"]]["ratio"]), Decimal("0.9"))
        self.assertEqual(by_id[limit["id"]]["status"], "near_limit")
        self.assertTrue(by_id[limit["id"]]["warning"])
        self.assertTrue(by_id[limit["id"]]["active"])

        self.assertEqual(Decimal(by_id[goal["id"]]["net"]), Decimal("-20000"))
        self.assertEqual(by_id[goal["id"]]["percent"], 0)
        self.assertEqual(by_id[goal["id"]]["status"], "in_progress")
        self.assertFalse(by_id[goal["id"]]["warning"])

    def test_progress_for_first_calendar_month(self) -> None:
        self.create_plan(name="Budget", type="expense_limit", amount="100000", start_month="2024-02")

        response = self.client.get("/plans/progress?month=0001-01", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(response.json()[0]["spent"]), Decimal("0"))

    def test_detail_defaults_to_start_month_and_filters(self) -> None:
        plan = self.create_plan(
            name="Makan", type="expense_limit", amount="50000",
            start_month="2024-02", category="Makan",
        )

        detail = self.client.get(f"/plans/{plan['id']}/detail", headers=self.headers).json()

        self.assertEqual(detail["progress"]["month"], "2024-02")
        self.assertEqual(Decimal(detail["progress"]["spent"]), Decimal("40000"))
        self.assertEqual(detail["progress"]["status"], "near_limit")
        self.assertEqual([t["category"] for t in detail["transactions"]], ["Makan"])

        march = self.client.get(
            f"/plans/{plan['id']}/detail?month=2024-03", headers=self.headers
        ).json()
        self.assertEqual(march["progress"]["status"], "exceeded")
        self.assertEqual(march["progress"]["percent"], 100)

    def test_plan_crud_and_validation(self) -> None:
        plan = self.create_plan(name=" Jajan ", type="expense_limit", amount="1000", start_month="2024-05")
        self.assertEqual(plan["name"], "Jajan")
        self.assertEqual(plan["start_month"], "2024-05")
        self.assertIsNone(plan["category"])

        updated = self.client.put(
            f"/plans/{plan['id']}",
            json={"name": "Jajan", "type": "saving_goal", "amount": "2000", "category": "  "},
            headers=self.headers,
        ).json()
        self.assertEqual(updated["type"], "saving_goal")
        self.assertEqual(updated["start_month"], "2024-05")

        for body in (
            {"name": "", "type": "expense_limit", "amount": "1"},
            {"name": "x", "type": "weekly", "amount": "1"},
            {"name": "x", "type": "expense_limit", "amount": "0"},
            {"name": "x", "type": "expense_limit", "amount": "1", "start_month": "2024-13"},
            {"name": "x", "type": "expense_limit", "amount": "1", "period": "weekly"},
        ):
            with self.subTest(body=body):
                response = self.client.post("/plans", json=body, headers=self.headers)
                self.assertEqual(response.status_code, 400)

        bad_month = self.client.get("/plans/progress?month=2024-2", headers=self.headers)
        self.assertEqual(bad_month.status_code, 400)

        self.assertEqual(
            self.client.delete(f"/plans/{plan['id']}", headers=self.headers).status_code, 200
        )
        self.assertEqual(
            self.client.get(f"/plans/{plan['id']}", headers=self.headers).status_code, 404
        )


if __name__ == "__main__":
    unittest.main()
