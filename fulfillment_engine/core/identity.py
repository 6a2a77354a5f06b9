"""
Identity and role lookups consumed by the engine.
"""

from typing import Protocol

from fulfillment_engine.config.loader import EngineConfig
from fulfillment_engine.storage.models import RequestKind, Role

ASSIGNABLE_ROLES = (Role.INTERNAL_DESIGNER, Role.VENDOR_DESIGNER)


class RoleProvider(Protocol):
    """External identity service answering assignment-eligibility questions."""

    def is_eligible_assignee(self, user_id: str, role: Role, request_kind: RequestKind) -> bool:
        ...


class ConfigRoleProvider:
    """Role provider backed by the vendor roster in the engine configuration.

    A user is eligible when they are a designer of an active vendor that
    handles the request kind, and the role matches the vendor type: internal
    vendors employ internal designers, every other vendor employs vendor
    designers.
    """

    def __init__(self, config: EngineConfig):
        self.config = config

    def is_eligible_assignee(self, user_id: str, role: Role, request_kind: RequestKind) -> bool:
        if role not in ASSIGNABLE_ROLES:
            return False
        vendor = self.config.vendor_of_designer(user_id)
        if vendor is None or not vendor.active:
            return False
        if request_kind not in vendor.kinds:
            return False
        expected_role = Role.INTERNAL_DESIGNER if vendor.internal else Role.VENDOR_DESIGNER
        return role == expected_role

    def role_of(self, user_id: str) -> Role:
        """Best-known role of a configured user; unknown users are clients.

        An outside vendor's own id acts as that vendor's account.
        """
        if user_id in self.config.admins:
            return Role.ADMIN
        vendor = self.config.vendor_of_designer(user_id)
        if vendor is not None:
            return Role.INTERNAL_DESIGNER if vendor.internal else Role.VENDOR_DESIGNER
        account = self.config.vendors.get(user_id)
        if account is not None and not account.internal:
            return Role.VENDOR
        return Role.CLIENT
