from django.db import models
from django.contrib.auth.models import AbstractUser, BaseUserManager


class Role(models.Model):
    """
    Model for defining marketplace roles.

    Every user carries exactly one role which decides what they may do with
    a purchase transaction: buyers pay and collect, sellers confirm manual
    payments, administrators reconcile statuses and drive delivery.
    """

    name = models.CharField(max_length=50, unique=True)
    description = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "roles"

    def __str__(self):
        return self.name


class CustomUserManager(BaseUserManager):
    """
    Custom user manager that resolves role names to Role rows on creation.
    """

    def _resolve_role(self, role):
        if role is None or isinstance(role, Role):
            return role
        role_obj, _ = Role.objects.get_or_create(name=role)
        return role_obj

    def create_user(self, username, email=None, password=None, **extra_fields):
        """
        Create and save a user with the given username, email, and password.
        `role` may be passed as a Role instance or as a role name.
        """
        if not username:
            raise ValueError("The given username must be set")
        email = self.normalize_email(email)
        username = self.model.normalize_username(username)
        extra_fields["role"] = self._resolve_role(extra_fields.get("role"))

        user = self.model(username=username, email=email, **extra_fields)
        user.set_password(password)
        user.save()
        return user

    def create_superuser(self, username, email=None, password=None, **extra_fields):
        """
        Create and save an administrator with Django admin site access.
        """
        extra_fields.setdefault("is_active", True)
        extra_fields.setdefault("is_staff", True)
        extra_fields.setdefault("is_superuser", True)
        extra_fields.setdefault("role", "admin")

        return self.create_user(username, email, password, **extra_fields)


class User(AbstractUser):
    """
    Marketplace user extending Django's AbstractUser with a mobile number and
    a role.
    """

    mobile_number = models.CharField(max_length=15, blank=True)
    role = models.ForeignKey(Role, on_delete=models.PROTECT, null=True, blank=True)

    REQUIRED_FIELDS = ["email"]
    USERNAME_FIELD = "username"

    objects = CustomUserManager()

    class Meta:
        db_table = "users"

    @property
    def role_name(self):
        return self.role.name if self.role else None

    @property
    def is_admin(self):
        return self.role_name == "admin"

    @property
    def is_buyer(self):
        return self.role_name == "buyer"

    @property
    def is_seller(self):
        return self.role_name == "seller"

    def __str__(self):
        """
        Returns the username and role in format "username (role)".
        """
        return f"{self.username} ({self.role_name or 'No Role'})"
