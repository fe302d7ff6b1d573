"""Permissions for the billing admin surface."""
from rest_framework.permissions import BasePermission


class IsBillingAdmin(BasePermission):
    """Staff users and accounts of the admin user type."""

    message = "Billing administration requires an admin account."

    def has_permission(self, request, view):
        user = request.user
        return bool(user and user.is_authenticated and getattr(user, "is_billing_admin", False))
