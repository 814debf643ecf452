import unittest

from parcelvault.db import InMemoryDbClient
from parcelvault.errors import NotFoundError, PermissionDeniedError, ValidationError
from parcelvault.types import UserRole
from parcelvault.users import UserService


class UserServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.location = self.db.create_location("Main St")
        self.other = self.db.create_location("Elsewhere")
        self.service = UserService(self.db)

    def _employee(self, email="emp@example.com", location_id=None):
        return self.service.create_user(
            "admin", email, location_id=location_id or self.location.id
        )

    def test_admin_creates_user_with_defaults(self):
        user = self.service.create_user(
            UserRole.ADMIN, " Ann@Example.com ", first_name="Ann", location_id=self.location.id
        )
        self.assertEqual(user.email, "Ann@Example.com")
        self.assertEqual(user.auth_user_id, "ann@example.com")
        self.assertEqual(user.role, UserRole.EMPLOYEE)
        self.assertTrue(user.is_active)
        self.assertEqual(self.db.get_app_user(user.id), user)

    def test_admin_may_create_any_role(self):
        manager = self.service.create_user(
            "admin", "boss@example.com", role="manager", auth_user_id="auth-9"
        )
        self.assertEqual(manager.role, UserRole.MANAGER)
        self.assertEqual(manager.auth_user_id, "auth-9")
        self.assertIsNone(manager.location_id)

    def test_create_validates_input(self):
        for email in (None, "", "   ", "not-an-email"):
            with self.subTest(email=email):
                with self.assertRaises(ValidationError):
                    self.service.create_user("admin", email)
        with self.assertRaises(ValidationError):
            self.service.create_user("admin", "a@example.com", role="owner")
        with self.assertRaises(NotFoundError):
            self.service.create_user("admin", "a@example.com", location_id="missing")
        self.assertEqual(self.db.list_app_users(), [])

    def test_duplicate_email_is_rejected(self):
        self._employee("dup@example.com")
        with self.assertRaises(ValidationError) as ctx:
            self.service.create_user("admin", "DUP@example.com", auth_user_id="other")
        self.assertEqual(ctx.exception.message, "A user with this email already exists")
        with self.assertRaises(ValidationError):
            self.service.create_user("admin", "new@example.com", auth_user_id="dup@example.com")

    def test_employees_cannot_manage_users(self):
        user = self._employee()
        with self.assertRaises(PermissionDeniedError):
            self.service.list_users("employee", location_id=self.location.id)
        with self.assertRaises(PermissionDeniedError):
            self.service.create_user("employee", "x@example.com", location_id=self.location.id)
        with self.assertRaises(PermissionDeniedError):
            self.service.update_user("employee", user.id, {"first_name": "X"})
        with self.assertRaises(PermissionDeniedError):
            self.service.delete_user("employee", user.id, location_id=self.location.id)

    def test_managers_only_create_employees(self):
        with self.assertRaises(PermissionDeniedError) as ctx:
            self.service.create_user(
                "manager", "m@example.com", role="manager", location_id=self.location.id
            )
        self.assertEqual(ctx.exception.message, "Managers can only create employees")

        user = self.service.create_user("manager", "e@example.com", location_id=self.location.id)
        self.assertEqual(user.role, UserRole.EMPLOYEE)

    def test_list_users_by_location(self):
        mine = self._employee("a@example.com")
        self._employee("b@example.com", location_id=self.other.id)
        listed = self.service.list_users("manager", location_id=self.location.id)
        self.assertEqual([u.id for u in listed], [mine.id])
        self.assertEqual(len(self.service.list_users("admin")), 2)
        with self.assertRaises(NotFoundError):
            self.service.list_users("admin", location_id="missing")

    def test_update_user(self):
        user = self._employee()
        updated = self.service.update_user(
            "admin",
            user.id,
            {"first_name": " Eve ", "role": "manager", "is_active": False, "location_id": None},
        )
        self.assertEqual(updated.first_name, "Eve")
        self.assertEqual(updated.role, UserRole.MANAGER)
        self.assertFalse(updated.is_active)
        self.assertIsNone(updated.location_id)

        with self.assertRaises(NotFoundError):
            self.service.update_user("admin", "missing", {"first_name": "X"})
        with self.assertRaises(ValidationError):
            self.service.update_user("admin", user.id, {"auth_user_id": "x"})
        with self.assertRaises(ValidationError):
            self.service.update_user("admin", user.id, {"is_active": "yes"})

    def test_update_rejects_email_taken_by_someone_else(self):
        first = self._employee("a@example.com")
        second = self._employee("b@example.com")
        with self.assertRaises(ValidationError):
            self.service.update_user("admin", second.id, {"email": "A@example.com"})
        same = self.service.update_user("admin", first.id, {"email": "a@example.com"})
        self.assertEqual(same.email, "a@example.com")

    def test_location_scoped_update_and_delete(self):
        outsider = self._employee("out@example.com", location_id=self.other.id)
        with self.assertRaises(NotFoundError):
            self.service.update_user(
                "manager", outsider.id, {"first_name": "X"}, location_id=self.location.id
            )
        with self.assertRaises(NotFoundError):
            self.service.delete_user("manager", outsider.id, location_id=self.location.id)
        self.assertIsNotNone(self.db.get_app_user(outsider.id))

    def test_managers_only_manage_employees_of_their_location(self):
        employee = self._employee()
        peer = self.service.create_user(
            "admin", "peer@example.com", role="manager", location_id=self.location.id
        )
        scope = {"location_id": self.location.id}
        with self.assertRaises(PermissionDeniedError):
            self.service.update_user("manager", peer.id, {"first_name": "X"}, **scope)
        with self.assertRaises(PermissionDeniedError):
            self.service.delete_user("manager", peer.id, **scope)
        with self.assertRaises(PermissionDeniedError):
            self.service.update_user("manager", employee.id, {"role": "admin"}, **scope)
        with self.assertRaises(PermissionDeniedError):
            self.service.update_user(
                "manager", employee.id, {"location_id": self.other.id}, **scope
            )

        updated = self.service.update_user("manager", employee.id, {"last_name": "Doe"}, **scope)
        self.assertEqual(updated.last_name, "Doe")
        self.service.delete_user("manager", employee.id, **scope)
        self.assertIsNone(self.db.get_app_user(employee.id))

    def test_admin_delete(self):
        user = self._employee()
        self.service.delete_user("admin", user.id)
        with self.assertRaises(NotFoundError):
            self.service.delete_user("admin", user.id)


if __name__ == "__main__":
    unittest.main()
