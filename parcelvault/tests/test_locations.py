import unittest
from datetime import datetime, timezone
from decimal import Decimal

from parcelvault.backup import BackupRotationManager
from parcelvault.blobstore import InMemoryBlobStore
from parcelvault.db import InMemoryDbClient
from parcelvault.errors import InvalidTier, NotFoundError, ValidationError
from parcelvault.locations import LocationService
from parcelvault.types import PackageStatus, PricingType, UserRole


class LocationServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.store = InMemoryBlobStore()
        manager = BackupRotationManager(
            self.db, self.store, clock=lambda: datetime(2024, 5, 1, tzinfo=timezone.utc)
        )
        self.service = LocationService(self.db, manager)

    def test_create_with_tiers(self):
        location = self.service.create_location(
            " Main St ",
            pricing_enabled=True,
            pricing_type="range_based",
            tiers=[
                {"minWeight": "0", "maxWeight": "5", "price": "3"},
                {"min_weight": 5, "max_weight": 10, "price": 7},
            ],
        )
        self.assertEqual(location.name, "Main St")
        self.assertEqual(location.pricing_type, PricingType.RANGE_BASED)
        tiers = self.db.list_pricing_tiers(location.id)
        self.assertEqual([t.price for t in tiers], [Decimal("3"), Decimal("7")])

    def test_create_rejects_bad_config_without_writing(self):
        with self.assertRaises(ValidationError):
            self.service.create_location("")
        with self.assertRaises(ValidationError):
            self.service.create_location("X", pricing_type="by_volume")
        with self.assertRaises(ValidationError):
            self.service.create_location("X", per_pound_rate="-1")
        with self.assertRaises(InvalidTier):
            self.service.create_location(
                "X", tiers=[{"minWeight": 10, "maxWeight": 5, "price": 1}]
            )
        self.assertEqual(self.db.list_locations(), [])

    def test_missing_pricing_type_defaults_to_per_pound(self):
        location = self.service.create_location("Main St", pricing_type=None)
        self.assertEqual(location.pricing_type, PricingType.PER_POUND)

    def test_update_replaces_tiers_and_fields(self):
        location = self.service.create_location(
            "Main St", tiers=[{"minWeight": 0, "maxWeight": 5, "price": 3}]
        )
        updated = self.service.update_location(
            location.id,
            tiers=[{"minWeight": 0, "maxWeight": 1, "price": 1}],
            per_pound_rate="2.25",
            pricing_enabled=True,
        )
        self.assertEqual(updated.per_pound_rate, Decimal("2.25"))
        self.assertTrue(updated.pricing_enabled)
        tiers = self.db.list_pricing_tiers(location.id)
        self.assertEqual([t.max_weight for t in tiers], [Decimal("1")])

        with self.assertRaises(ValidationError):
            self.service.update_location(location.id, is_suspended=True)
        with self.assertRaises(NotFoundError):
            self.service.update_location("missing", name="x")

    def test_suspend_and_unsuspend(self):
        location = self.service.create_location("Main St")
        self.assertTrue(self.service.suspend_location(location.id).is_suspended)
        self.assertFalse(self.service.unsuspend_location(location.id).is_suspended)
        with self.assertRaises(NotFoundError):
            self.service.suspend_location("missing")

    def test_location_stats_value_only_pending(self):
        location = self.service.create_location(
            "Main St", pricing_enabled=True, per_pound_rate="1.50"
        )
        self.db.create_package(location.id, "A", "Alice", Decimal("2"))
        delivered = self.db.create_package(location.id, "B", "Bob", Decimal("4"))
        self.db.update_package(
            delivered.id,
            {
                "status": PackageStatus.DELIVERED,
                "delivered_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            },
        )
        stats = self.service.get_location_stats(location.id)
        self.assertEqual(stats["total_packages"], 2)
        self.assertEqual(stats["pending_packages"], 1)
        self.assertEqual(stats["total_value"], Decimal("3.00"))

    def test_admin_stats(self):
        location = self.service.create_location("Main St")
        self.service.create_location("Second")
        self.db.create_package(location.id, "A", "Alice", Decimal("1"))
        self.db.create_app_user("auth-1", role=UserRole.ADMIN)
        stats = self.service.get_admin_stats()
        self.assertEqual(
            stats,
            {"total_locations": 2, "total_packages": 1, "total_users": 1, "pending_packages": 1},
        )

    def test_describe_location(self):
        location = self.service.create_location("Main St")
        self.db.create_storage_location(location.id, "Shelf A")
        payload = self.service.describe_location(location)
        self.assertEqual(payload["name"], "Main St")
        self.assertEqual(payload["storage_locations"][0]["name"], "Shelf A")
        self.assertEqual(payload["package_count"], 0)

    def test_delete_requires_matching_name(self):
        location = self.service.create_location("Main St")
        with self.assertRaises(ValidationError):
            self.service.delete_location(location.id, "main st")
        self.assertIsNotNone(self.db.get_location(location.id))

    def test_delete_takes_final_snapshot(self):
        location = self.service.create_location("Main St")
        self.db.create_package(location.id, "A", "Alice", Decimal("1"))

        result = self.service.delete_location(location.id, "Main St")

        self.assertEqual(result, {"deleted": True, "backup_bin_id": "bin-1"})
        self.assertEqual(self.store.stored["bin-1"]["name"], "DELETED_Main St_2024-05-01")
        self.assertIsNone(self.db.get_location(location.id))
        self.assertEqual(self.db.count_packages(), 0)

    def test_delete_proceeds_when_snapshot_fails(self):
        location = self.service.create_location("Main St")
        self.store.configured = False
        result = self.service.delete_location(location.id, "Main St")
        self.assertEqual(result, {"deleted": True, "backup_bin_id": None})
        self.assertIsNone(self.db.get_location(location.id))


if __name__ == "__main__":
    unittest.main()
