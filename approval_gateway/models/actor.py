from enum import Enum
from pydantic import BaseModel


class Role(str, Enum):
    ADMIN = "admin"
    MERCHANT = "merchant"
    USER = "user"


class Actor(BaseModel):
    """Acting identity as supplied by the identity/role provider"""
    id: str
    role: Role = Role.USER
    merchant_id: str | None = None
    wallet_address: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
