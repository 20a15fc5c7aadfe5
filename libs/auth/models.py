from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class AuthUser(BaseModel):
    """
    Authenticated storefront user, as asserted by the upstream auth layer.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
