
# Create your tests here.

from django.test import TestCase
from django.urls import reverse
from rest_framework.test import APITestCase
from rest_framework import status
from django.contrib.auth import get_user_model
from .models import Role
from .signals import DEFAULT_ROLES

User = get_user_model()


class RoleModelTest(TestCase):
    """Test cases for Role model."""

    def setUp(self):
        self.role = Role.objects.create(
            name="test_role",
            description="Test role description"
        )

    def test_role_creation(self):
        """Test that role can be created successfully."""
        self.assertEqual(self.role.name, "test_role")
        self.assertEqual(self.role.description, "Test role description")

    def test_role_str_representation(self):
        """Test the string representation of role."""
        self.assertEqual(str(self.role), "test_role")

    def test_default_roles_created_after_migrate(self):
        """Test that the marketplace roles exist in a migrated database."""
        for role_data in DEFAULT_ROLES:
            self.assertTrue(Role.objects.filter(name=role_data["name"]).exists())


class UserModelTest(TestCase):
    """Test cases for User model and manager."""

    def setUp(self):
        self.buyer_role, _ = Role.objects.get_or_create(name="buyer", defaults={"description": "Buyer"})

    def test_create_user_with_role_name(self):
        """Test that a role name is resolved to the Role row."""
        user = User.objects.create_user(
            username="buyer1", email="Buyer1@Example.com", password="testpass123", role="buyer"
        )

        self.assertEqual(user.role, self.buyer_role)
        self.assertEqual(user.email, "Buyer1@example.com")
        self.assertTrue(user.check_password("testpass123"))

    def test_create_user_with_role_instance(self):
        user = User.objects.create_user(username="buyer2", password="testpass123", role=self.buyer_role)
        self.assertEqual(user.role_name, "buyer")

    def test_create_user_without_username(self):
        """Test that a username is required."""
        with self.assertRaises(ValueError):
            User.objects.create_user(username="", password="testpass123")

    def test_role_flags(self):
        """Test is_admin, is_buyer and is_seller."""
        admin = User.objects.create_user(username="admin1", password="testpass123", role="admin")
        seller = User.objects.create_user(username="seller1", password="testpass123", role="seller")
        nobody = User.objects.create_user(username="nobody", password="testpass123")

        self.assertTrue(admin.is_admin)
        self.assertFalse(admin.is_buyer)
        self.assertTrue(seller.is_seller)
        self.assertIsNone(nobody.role_name)
        self.assertFalse(nobody.is_admin)

    def test_create_superuser(self):
        """Test that superusers get staff access and the admin role."""
        user = User.objects.create_superuser(username="root", email="root@example.com", password="testpass123")

        self.assertTrue(user.is_staff)
        self.assertTrue(user.is_superuser)
        self.assertTrue(user.is_admin)

    def test_user_str_representation(self):
        user = User.objects.create_user(username="buyer3", password="testpass123", role="buyer")
        self.assertEqual(str(user), "buyer3 (buyer)")
        nobody = User.objects.create_user(username="nobody2", password="testpass123")
        self.assertEqual(str(nobody), "nobody2 (No Role)")


class TokenAPITest(APITestCase):
    """Test cases for JWT login."""

    def setUp(self):
        self.user = User.objects.create_user(
            username="buyer_login", email="login@example.com", password="testpass123", role="buyer"
        )

    def test_obtain_token(self):
        """Test that valid credentials return an access and refresh token."""
        url = reverse("token_obtain_pair")
        response = self.client.post(url, {"username": "buyer_login", "password": "testpass123"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn("access", response.data)
        self.assertIn("refresh", response.data)

    def test_token_grants_access(self):
        """Test that the access token authenticates API requests."""
        url = reverse("token_obtain_pair")
        token = self.client.post(
            url, {"username": "buyer_login", "password": "testpass123"}, format="json"
        ).data["access"]

        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")
        response = self.client.get("/api/transactions/my-purchases/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_invalid_credentials(self):
        url = reverse("token_obtain_pair")
        response = self.client.post(url, {"username": "buyer_login", "password": "wrong"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
