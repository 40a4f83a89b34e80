import os
import sys
import unittest
from datetime import timedelta
from pathlib import Path

from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")

from equipment_rental.RentalDesk import app
from equipment_rental.db.deps import get_rental_db
from equipment_rental.models.rental_models import Rental
from equipment_rental.tests.sample_data import (
    ADMIN_PASSWORD,
    USER_PASSWORD,
    build_session_factory,
    build_test_engine,
    due_in,
    make_overdue,
    seed_sample_data,
)


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine = build_test_engine()
        self.SessionTesting = build_session_factory(self.engine)
        with self.SessionTesting() as db:
            sample = seed_sample_data(db)
            self.admin_id = sample["admin"].CustomerID
            self.alice_id = sample["alice"].CustomerID
            self.bob_id = sample["bob"].CustomerID
            self.equipment_ids = [item.EquipmentID for item in sample["equipment"]]

        def override_get_rental_db():
            db = self.SessionTesting()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_rental_db] = override_get_rental_db
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        self.engine.dispose()

    def _login(self, username: str, password: str) -> dict:
        response = self.client.post("/api/auth/login", json={"username": username, "password": password})
        self.assertEqual(response.status_code, 200, response.text)
        # Identify callers by token only so each request picks its own actor.
        self.client.cookies.clear()
        return {"X-Session-Token": response.json()["sessionToken"]}

    def _admin(self) -> dict:
        return self._login("admin", ADMIN_PASSWORD)

    def _alice(self) -> dict:
        return self._login("alice", USER_PASSWORD)

    def _issue(self, headers: dict, equipment_id: int, customer_id: int, days: float = 7):
        return self.client.post(
            "/api/rental/issue",
            headers=headers,
            json={
                "equipmentID": equipment_id,
                "customerID": customer_id,
                "dueDate": due_in(days).isoformat(),
            },
        )

    def test_healthchecks(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_login_rejects_bad_payloads_and_credentials(self):
        wrong = self.client.post("/api/auth/login", json={"username": "alice", "password": "nope"})
        self.assertEqual(wrong.status_code, 401)
        self.assertEqual(wrong.json()["detail"], "Invalid credentials.")

        missing = self.client.post("/api/auth/login", json={"username": "alice"})
        self.assertEqual(missing.status_code, 400)

        extra = self.client.post(
            "/api/auth/login", json={"username": "alice", "password": USER_PASSWORD, "role": "Admin"}
        )
        self.assertEqual(extra.status_code, 400)

    def test_login_me_and_logout_revokes_token(self):
        headers = self._alice()

        me = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["user"]["username"], "alice")
        self.assertEqual(me.json()["user"]["role"], "User")

        self.assertEqual(self.client.post("/api/auth/logout", headers=headers).json(), {"ok": True})
        self.client.cookies.clear()
        self.assertEqual(self.client.get("/api/auth/me", headers=headers).status_code, 401)

    def test_cookie_session_authenticates_after_login(self):
        response = self.client.post("/api/auth/login", json={"username": "alice", "password": USER_PASSWORD})
        self.assertEqual(response.status_code, 200)

        me = self.client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["user"]["customerID"], self.alice_id)

    def test_requests_without_session_are_unauthorized(self):
        anonymous = TestClient(app)
        for path in ("/api/equipment", "/api/rental", f"/api/customer/{self.alice_id}"):
            response = anonymous.get(path)
            self.assertEqual(response.status_code, 401, path)
            self.assertEqual(response.json()["detail"], "Not logged in.")

    def test_equipment_reads_open_to_users_writes_admin_only(self):
        alice = self._alice()

        listing = self.client.get("/api/equipment", headers=alice)
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(len(listing.json()), len(self.equipment_ids))
        self.assertEqual(self.client.get("/api/equipment/rented", headers=alice).status_code, 403)

        payload = {"name": "Scissor Lift", "category": "HeavyMachinery", "rentalPrice": 180}
        self.assertEqual(self.client.post("/api/equipment", headers=alice, json=payload).status_code, 403)

        admin = self._admin()
        created = self.client.post("/api/equipment", headers=admin, json=payload)
        self.assertEqual(created.status_code, 201)
        body = created.json()
        self.assertTrue(body["isAvailable"])
        self.assertEqual(body["condition"], "New")

        updated = self.client.put(
            f"/api/equipment/{body['equipmentID']}", headers=admin, json={"condition": "Good", "isAvailable": False}
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["condition"], "Good")
        self.assertTrue(updated.json()["isAvailable"])

        deleted = self.client.delete(f"/api/equipment/{body['equipmentID']}", headers=admin)
        self.assertEqual(deleted.json(), {"message": "Deleted"})
        missing = self.client.get(f"/api/equipment/{body['equipmentID']}", headers=admin)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["detail"], "Equipment not found")

    def test_rental_lifecycle_over_http(self):
        alice = self._alice()
        excavator, drill = self.equipment_ids[0], self.equipment_ids[1]

        issued = self._issue(alice, excavator, self.alice_id)
        self.assertEqual(issued.status_code, 201, issued.text)
        rental = issued.json()
        self.assertEqual(rental["status"], "Active")
        self.assertFalse(rental["equipment"]["isAvailable"])

        admin = self._admin()
        busy = self._issue(admin, excavator, self.bob_id)
        self.assertEqual(busy.status_code, 400)
        self.assertEqual(busy.json()["detail"], "Equipment is not available.")

        second = self._issue(alice, drill, self.alice_id)
        self.assertEqual(second.status_code, 400)
        self.assertEqual(second.json()["detail"], "Customer already has an active rental. Return it first.")

        active = self.client.get(f"/api/customer/{self.alice_id}/active-rental", headers=alice)
        self.assertEqual(active.json()["rentalID"], rental["rentalID"])

        self.assertEqual(
            self.client.put(
                f"/api/rental/{rental['rentalID']}", headers=alice, json={"newDueDate": due_in(14).isoformat()}
            ).status_code,
            403,
        )
        earlier = self.client.put(
            f"/api/rental/{rental['rentalID']}", headers=admin, json={"newDueDate": due_in(1).isoformat()}
        )
        self.assertEqual(earlier.status_code, 400)
        extended = self.client.put(
            f"/api/rental/{rental['rentalID']}", headers=admin, json={"newDueDate": due_in(14).isoformat()}
        )
        self.assertEqual(extended.status_code, 200)
        self.assertEqual(extended.json()["message"], "Rental extended successfully")

        returned = self.client.post(
            "/api/rental/return",
            headers=alice,
            json={"rentalID": rental["rentalID"], "conditionOnReturn": "Good", "notes": "Tracks cleaned"},
        )
        self.assertEqual(returned.status_code, 200)
        self.assertEqual(returned.json()["message"], "Equipment returned successfully")
        self.assertEqual(returned.json()["rental"]["status"], "Completed")
        self.assertEqual(returned.json()["rental"]["notes"], "Tracks cleaned")

        self.assertIsNone(self.client.get(f"/api/customer/{self.alice_id}/active-rental", headers=alice).json())
        self.assertTrue(self.client.get(f"/api/equipment/{excavator}", headers=alice).json()["isAvailable"])

        cancel_completed = self.client.delete(f"/api/rental/{rental['rentalID']}", headers=admin)
        self.assertEqual(cancel_completed.status_code, 400)
        self.assertEqual(cancel_completed.json()["detail"], "Cannot cancel completed rentals.")

        completed = self.client.get("/api/rental/completed", headers=alice).json()
        self.assertEqual([item["rentalID"] for item in completed], [rental["rentalID"]])

    def test_cancel_restores_availability(self):
        admin = self._admin()
        excavator = self.equipment_ids[0]
        rental = self._issue(admin, excavator, self.bob_id).json()

        cancelled = self.client.delete(f"/api/rental/{rental['rentalID']}", headers=admin)

        self.assertEqual(cancelled.json(), {"message": "Rental cancelled successfully"})
        self.assertTrue(self.client.get(f"/api/equipment/{excavator}", headers=admin).json()["isAvailable"])
        self.assertEqual(self.client.get(f"/api/rental/{rental['rentalID']}", headers=admin).status_code, 404)

    def test_users_see_only_their_own_rentals(self):
        admin = self._admin()
        bob_rental = self._issue(admin, self.equipment_ids[0], self.bob_id).json()
        alice = self._alice()
        alice_rental = self._issue(alice, self.equipment_ids[1], self.alice_id).json()

        own = self.client.get("/api/rental", headers=alice).json()
        self.assertEqual([item["rentalID"] for item in own], [alice_rental["rentalID"]])
        self.assertEqual(len(self.client.get("/api/rental", headers=admin).json()), 2)

        self.assertEqual(self.client.get(f"/api/rental/{bob_rental['rentalID']}", headers=alice).status_code, 403)
        self.assertEqual(self.client.get(f"/api/customer/{self.bob_id}", headers=alice).status_code, 403)
        self.assertEqual(self.client.get(f"/api/customer/{self.bob_id}/rentals", headers=alice).status_code, 403)
        self.assertEqual(self.client.get("/api/rental/overdue", headers=alice).status_code, 403)
        self.assertEqual(self._issue(alice, self.equipment_ids[2], self.bob_id).status_code, 403)

        returned_by_other = self.client.post(
            "/api/rental/return",
            headers=alice,
            json={"rentalID": bob_rental["rentalID"], "conditionOnReturn": "Good"},
        )
        self.assertEqual(returned_by_other.status_code, 403)

        history = self.client.get(f"/api/rental/equipment/{self.equipment_ids[0]}", headers=admin)
        self.assertEqual([item["rentalID"] for item in history.json()], [bob_rental["rentalID"]])

    def test_overdue_rental_is_listed_then_returned(self):
        admin = self._admin()
        rental = self._issue(admin, self.equipment_ids[0], self.bob_id).json()
        with self.SessionTesting() as db:
            make_overdue(db, db.get(Rental, rental["rentalID"]))

        overdue = self.client.get("/api/rental/overdue", headers=admin).json()
        self.assertEqual([item["status"] for item in overdue], ["Overdue"])

        returned = self.client.post(
            "/api/rental/return",
            headers=admin,
            json={"rentalID": rental["rentalID"], "conditionOnReturn": "Fair", "notes": "Two days late"},
        )
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertEqual(returned.json()["rental"]["status"], "Completed")
        self.assertEqual(self.client.get("/api/rental/overdue", headers=admin).json(), [])

    def test_issue_with_past_due_date_is_rejected(self):

        admin = self._admin()
        response = self.client.post(
            "/api/rental/issue",
            headers=admin,
            json={
                "equipmentID": self.equipment_ids[0],
                "customerID": self.bob_id,
                "dueDate": (due_in(0) - timedelta(hours=1)).isoformat(),
            },
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Due date must be in the future.")

    def test_missing_records_return_not_found(self):
        admin = self._admin()
        self.assertEqual(self.client.get("/api/rental/9999", headers=admin).status_code, 404)
        self.assertEqual(self.client.get("/api/customer/9999", headers=admin).status_code, 404)
        missing_customer = self._issue(admin, self.equipment_ids[0], 9999)
        self.assertEqual(missing_customer.status_code, 404)
        self.assertEqual(missing_customer.json()["detail"], "Customer not found")

    def test_public_sign_up_cannot_grant_admin(self):
        created = self.client.post(
            "/api/customer",
            json={"name": "Frank", "username": "frank", "password": "frank-pass", "email": "frank@example.com"},
        )
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["role"], "User")
        self.assertNotIn("password", created.json())

        escalated = self.client.post(
            "/api/customer",
            json={"name": "Eve", "username": "eve", "password": "eve-pass", "role": "Admin"},
        )
        self.assertEqual(escalated.status_code, 403)

        duplicate = self.client.post(
            "/api/customer", json={"name": "Frank", "username": "frank", "password": "frank-pass"}
        )
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(duplicate.json()["detail"], "Username is already taken.")

        self._login("frank", "frank-pass")

    def test_role_change_applies_to_live_session(self):
        alice = self._alice()
        self.assertEqual(self.client.get("/api/customer", headers=alice).status_code, 403)

        admin = self._admin()
        promoted = self.client.put(f"/api/customer/{self.alice_id}", headers=admin, json={"role": "Admin"})
        self.assertEqual(promoted.status_code, 200)

        self.assertEqual(self.client.get("/api/customer", headers=alice).status_code, 200)

    def test_customer_delete_is_admin_only_and_blocked_by_open_rental(self):
        alice = self._alice()
        self.assertEqual(self.client.delete(f"/api/customer/{self.bob_id}", headers=alice).status_code, 403)

        admin = self._admin()
        self._issue(admin, self.equipment_ids[0], self.bob_id)
        blocked = self.client.delete(f"/api/customer/{self.bob_id}", headers=admin)
        self.assertEqual(blocked.status_code, 400)
        self.assertEqual(blocked.json()["detail"], "Customer has an active rental and cannot be deleted.")


if __name__ == "__main__":
    unittest.main()
