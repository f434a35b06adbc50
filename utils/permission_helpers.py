from rest_framework import permissions


class RoleBasedPermissions:
    """
    Reusable permission classes to eliminate code duplication.
    """

    @staticmethod
    def has_role(request, allowed_roles):
        """
        Generic role-based permission check.

        Args:
            request: HTTP request object
            allowed_roles (list): List of allowed role names

        Returns:
            bool: True if user has one of the allowed roles
        """
        if not request.user or not request.user.is_authenticated:
            return False

        if not request.user.role:
            return False

        return request.user.role.name in allowed_roles


class IsAdminUser(permissions.BasePermission):
    """
    Restricts access to marketplace administrators.
    Used for status overrides and delivery updates.
    """

    def has_permission(self, request, view):
        return RoleBasedPermissions.has_role(request, ["admin"])


class IsBuyer(permissions.BasePermission):
    """
    Restricts access to buyers, for purchase history and collection.
    """

    def has_permission(self, request, view):
        return RoleBasedPermissions.has_role(request, ["buyer"])


class IsSeller(permissions.BasePermission):
    def has_permission(self, request, view):
        return RoleBasedPermissions.has_role(request, ["seller"])


class AdminOnlyPermissionMixin:
    """
    Mixin to restrict access to admin users only.

    This mixin ensures that only users with admin role can access the view,
    providing administrative-level access control.
    """

    def get_permissions(self):
        return [permissions.IsAuthenticated(), IsAdminUser()]
