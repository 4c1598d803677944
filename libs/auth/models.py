from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

STAFF_ROLES = frozenset({"service_role", "admin", "staff"})


class AuthUser(BaseModel):
    """
    Represents an authenticated caller decoded from a Supabase-style JWT.

    ``user_id`` is the learner reference stored on registrations and
    waitlist entries.
    """

    user_id: str = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    role: str = "authenticated"

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES
