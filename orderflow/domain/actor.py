from dataclasses import dataclass
from typing import Optional

from orderflow.domain.constants import Role


@dataclass(frozen=True)
class Actor:
    """The authenticated user as the rule engine sees it."""

    user_id: str
    full_name: str = ""
    role: Optional[str] = None
    department: Optional[str] = None
    production_stage: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @property
    def is_sales(self) -> bool:
        return self.role == Role.SALES.value

    @property
    def home_department(self) -> Optional[str]:
        # The role wins over the profile department; admins have no home department
        if self.role and self.role != Role.ADMIN.value:
            return self.role
        return self.department or None

    @property
    def display_name(self) -> str:
        return self.full_name or "Unknown"
