import os
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from parcelvault.app import create_app
from parcelvault.config import get_settings
from parcelvault.db import InMemoryDbClient
from parcelvault.dependencies import get_backup_scheduler, get_db_client, reset_dependencies

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        env = patch.dict(
            os.environ,
            {"PARCELVAULT_USE_IN_MEMORY_BACKENDS": "true", "SCHEDULER_AUTOSTART": "false"},
        )
        env.start()
        self.addCleanup(env.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)
        reset_dependencies()
        self.addCleanup(reset_dependencies)

        self.client = TestClient(create_app())
        db = get_db_client()
        self.assertIsInstance(db, InMemoryDbClient)
        db.reset()

    def _create_location(self, name="Main St", **extra):
        body = {"name": name, "pricingEnabled": True, "perPoundRate": "2"}
        body.update(extra)
        response = self.client.post("/api/locations", json=body, headers=ADMIN)
        self.assertEqual(response.status_code, 201)
        return response.json()

    @staticmethod
    def _employee(location_id, user_id="emp-1"):
        return {"X-User-Id": user_id, "X-User-Role": "employee", "X-Location-Id": location_id}

    def test_health(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_identity_is_required(self):
        self.assertEqual(self.client.get("/api/locations").status_code, 403)
        response = self.client.get(
            "/api/locations", headers={"X-User-Id": "emp-1", "X-User-Role": "employee"}
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {"detail": "Admin access required"})

    def test_package_flow(self):
        location = self._create_location()
        headers = self._employee(location["id"])

        created = self.client.post(
            f"/api/locations/{location['id']}/packages",
            json={"trackingNumber": "TRK1", "recipientName": "Alice Smith", "weight": 1},
            headers=headers,
        )
        self.assertEqual(created.status_code, 201)
        package = created.json()
        self.assertEqual(package["status"], "pending")
        self.assertFalse(package["isDelivered"])

        search = self.client.get(f"/api/locations/{location['id']}/search/alice", headers=headers)
        self.assertEqual(search.status_code, 200)
        result = search.json()
        self.assertEqual(result["recipientSummaries"][0]["recipientName"], "Alice Smith")
        self.assertEqual(result["recipientSummaries"][0]["totalCost"], "2")
        self.assertFalse(result["tooManyRecipients"])
        self.assertEqual(result["packages"][0]["calculatedCost"], "2")

        delivered = self.client.post(
            f"/api/locations/{location['id']}/packages/{package['id']}/deliver",
            json={"pickedUpByLastName": "Smith"},
            headers=headers,
        )
        self.assertEqual(delivered.status_code, 200)
        self.assertTrue(delivered.json()["isDelivered"])
        self.assertIsNotNone(delivered.json()["deliveredAt"])

        stats = self.client.get(f"/api/locations/{location['id']}/stats", headers=headers)
        self.assertEqual(stats.json()["pendingPackages"], 0)

    def test_search_without_matches_returns_null(self):
        location = self._create_location()
        response = self.client.get(
            f"/api/locations/{location['id']}/search/nobody", headers=self._employee(location["id"])
        )
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json())

    def test_other_locations_are_forbidden(self):
        location = self._create_location()
        other = self._create_location("Elsewhere")
        response = self.client.get(
            f"/api/locations/{location['id']}/packages", headers=self._employee(other["id"])
        )
        self.assertEqual(response.status_code, 403)

    def test_validation_errors_map_to_400(self):
        location = self._create_location()
        response = self.client.post(
            f"/api/locations/{location['id']}/packages",
            json={"trackingNumber": "TRK1", "recipientName": "Alice", "weight": 0},
            headers=self._employee(location["id"]),
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("detail", response.json())

        response = self.client.post(
            "/api/locations", json={"name": "X", "pricingType": "by_volume"}, headers=ADMIN
        )
        self.assertEqual(response.status_code, 400)

    def test_bulk_update(self):
        location = self._create_location()
        headers = self._employee(location["id"])
        url = f"/api/locations/{location['id']}/packages"
        ids = [
            self.client.post(
                url,
                json={"trackingNumber": f"T{i}", "recipientName": "Bob", "weight": 1},
                headers=headers,
            ).json()["id"]
            for i in range(2)
        ]

        response = self.client.patch(
            f"{url}/bulk",
            json={
                "packageIds": ids + ["missing"],
                "updates": {"isDelivered": True, "pickedUpByLastName": "Jones"},
            },
            headers=headers,
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["updatedCount"], 2)
        self.assertEqual(
            [o["status"] for o in payload["outcomes"]], ["updated", "updated", "not_found"]
        )

    def test_storage_locations(self):
        location = self._create_location()
        headers = self._employee(location["id"])
        url = f"/api/locations/{location['id']}/storage-locations"

        created = self.client.post(url, json={"name": "Shelf A"}, headers=headers)
        self.assertEqual(created.status_code, 201)
        listed = self.client.get(url, headers=headers).json()
        self.assertEqual([s["name"] for s in listed], ["Shelf A"])

        deleted = self.client.delete(f"{url}/{created.json()['id']}", headers=headers)
        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(self.client.get(url, headers=headers).json(), [])

    def test_delete_location_needs_confirmation(self):
        location = self._create_location()
        url = f"/api/locations/{location['id']}"

        response = self.client.request("DELETE", url, json={"confirmName": "Wrong"}, headers=ADMIN)
        self.assertEqual(response.status_code, 400)

        response = self.client.request(
            "DELETE", url, json={"confirmName": "Main St"}, headers=ADMIN
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"deleted": True, "backupBinId": "bin-1"})
        self.assertEqual(self.client.get(url, headers=ADMIN).status_code, 404)

    def test_archive_run_defaults(self):
        response = self.client.post("/api/archive/run", headers=ADMIN)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["archivedCount"], 0)

        response = self.client.post("/api/archive/run", json={"monthsOld": 0}, headers=ADMIN)
        self.assertEqual(response.status_code, 400)

    def test_backup_settings_and_manual_run(self):
        location = self._create_location()

        settings = self.client.get("/api/admin/backup/settings", headers=ADMIN).json()
        self.assertFalse(settings["enabled"])
        self.assertEqual(settings["frequencyHours"], 24)

        self.assertEqual(
            self.client.post("/api/admin/backup/toggle", json={"enabled": True}, headers=ADMIN).status_code,
            400,
        )
        validated = self.client.post("/api/admin/backup/validate-key", headers=ADMIN)
        self.assertTrue(validated.json()["valid"])

        toggled = self.client.post(
            "/api/admin/backup/toggle", json={"enabled": True}, headers=ADMIN
        )
        self.assertEqual(toggled.status_code, 200)
        self.assertTrue(get_backup_scheduler().is_running)

        run = self.client.post(
            "/api/admin/backup/run", json={"locationId": location["id"]}, headers=ADMIN
        )
        self.assertEqual(run.status_code, 200)
        self.assertTrue(run.json()["success"])

        run_all = self.client.post("/api/admin/backup/run", headers=ADMIN).json()
        self.assertEqual(run_all["successCount"], 1)

        status = self.client.get("/api/admin/backup/locations", headers=ADMIN).json()
        self.assertEqual(status[0]["backupCount"], 2)

    def test_admin_user_management(self):
        location = self._create_location()

        created = self.client.post(
            "/api/admin/users",
            json={"email": "mia@example.com", "role": "manager", "locationId": location["id"]},
            headers=ADMIN,
        )
        self.assertEqual(created.status_code, 201)
        user = created.json()
        self.assertEqual(user["role"], "manager")
        self.assertEqual(user["locationId"], location["id"])
        self.assertNotIn("password", user)

        duplicate = self.client.post(
            "/api/admin/users", json={"email": "MIA@example.com"}, headers=ADMIN
        )
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(
            self.client.post("/api/admin/users", json={}, headers=ADMIN).status_code, 400
        )

        listed = self.client.get("/api/admin/users", headers=ADMIN).json()
        self.assertEqual([u["email"] for u in listed], ["mia@example.com"])

        patched = self.client.patch(
            f"/api/admin/users/{user['id']}", json={"isActive": False}, headers=ADMIN
        )
        self.assertEqual(patched.status_code, 200)
        self.assertFalse(patched.json()["isActive"])
        self.assertEqual(
            self.client.patch(
                "/api/admin/users/missing", json={"firstName": "X"}, headers=ADMIN
            ).status_code,
            404,
        )

        self.assertEqual(
            self.client.delete(f"/api/admin/users/{user['id']}", headers=ADMIN).status_code, 204
        )
        self.assertEqual(
            self.client.delete(f"/api/admin/users/{user['id']}", headers=ADMIN).status_code, 404
        )
        self.assertEqual(
            self.client.get("/api/admin/users", headers=self._employee(location["id"])).status_code,
            403,
        )

    def test_location_user_management(self):
        location = self._create_location()
        other = self._create_location("Elsewhere")
        manager = {"X-User-Id": "mgr-1", "X-User-Role": "manager", "X-Location-Id": location["id"]}
        url = f"/api/locations/{location['id']}/users"

        self.assertEqual(
            self.client.get(url, headers=self._employee(location["id"])).status_code, 403
        )
        refused = self.client.post(
            url, json={"email": "m2@example.com", "role": "manager"}, headers=manager
        )
        self.assertEqual(refused.status_code, 403)
        self.assertEqual(refused.json(), {"detail": "Managers can only create employees"})

        created = self.client.post(url, json={"email": "emp@example.com"}, headers=manager)
        self.assertEqual(created.status_code, 201)
        employee = created.json()
        self.assertEqual(employee["role"], "employee")
        self.assertEqual(employee["locationId"], location["id"])

        outsider = self.client.post(
            "/api/admin/users",
            json={"email": "out@example.com", "locationId": other["id"]},
            headers=ADMIN,
        ).json()
        self.assertEqual(
            self.client.delete(f"{url}/{outsider['id']}", headers=manager).status_code, 404
        )

        listed = self.client.get(url, headers=manager).json()
        self.assertEqual([u["id"] for u in listed], [employee["id"]])

        renamed = self.client.patch(
            f"{url}/{employee['id']}", json={"lastName": "Doe"}, headers=manager
        )
        self.assertEqual(renamed.status_code, 200)
        self.assertEqual(renamed.json()["lastName"], "Doe")

        self.assertEqual(
            self.client.delete(f"{url}/{employee['id']}", headers=manager).status_code, 204
        )
        self.assertEqual(self.client.get(url, headers=manager).json(), [])

    def test_ticket_flow(self):
        location = self._create_location()
        employee = self._employee(location["id"])

        created = self.client.post(
            "/api/tickets", json={"subject": "Scanner", "message": "It beeps"}, headers=employee
        )
        self.assertEqual(created.status_code, 201)
        ticket = created.json()
        self.assertEqual(len(ticket["messages"]), 1)

        stranger = self._employee(location["id"], user_id="emp-2")
        self.assertEqual(
            self.client.get(f"/api/tickets/{ticket['id']}", headers=stranger).status_code, 403
        )

        reply = self.client.post(
            f"/api/tickets/{ticket['id']}/messages", json={"message": "On it"}, headers=ADMIN
        )
        self.assertEqual(reply.status_code, 201)
        self.assertTrue(reply.json()["isAdmin"])

        resolved = self.client.patch(
            f"/api/admin/tickets/{ticket['id']}", json={"status": "resolved"}, headers=ADMIN
        )
        self.assertEqual(resolved.status_code, 200)
        self.assertEqual(resolved.json()["status"], "resolved")
        self.assertIsNotNone(resolved.json()["archivedBinId"])

        mine = self.client.get("/api/tickets", headers=employee).json()
        self.assertEqual([t["id"] for t in mine], [ticket["id"]])


if __name__ == "__main__":
    unittest.main()
