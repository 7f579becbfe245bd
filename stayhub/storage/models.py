from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

DEFAULT_AVATAR_URL = "https://example.com/default-avatar.png"

UTILITIES = ("wifi", "aircon", "water", "electricity", "furniture", "security")
GENDERS = ("male", "female", "other")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles."""

    RENTER = "renter"  # standard user
    LANDLORD = "landlord"  # property owner
    TECHNICIAN = "technician"  # field technician
    ADMIN = "admin"


@dataclass
class Address:
    street: str
    ward: str
    district: str
    city: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "street": self.street,
            "ward": self.ward,
            "district": self.district,
            "city": self.city,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "Address":
        return cls(
            street=data["street"],
            ward=data["ward"],
            district=data["district"],
            city=data["city"],
        )


@dataclass
class PriceRange:
    min: float = 0
    max: float = 0


@dataclass
class Account:
    """A marketplace account. The password hash is stored separately."""

    id: str
    email: str
    name: str
    phone: str
    address: Address
    role: str = Role.RENTER.value
    is_verified: bool = False
    is_banned: bool = False
    dob: Optional[date] = None
    gender: str = "other"
    avatar: str = DEFAULT_AVATAR_URL
    preferred_utilities: List[str] = field(default_factory=list)
    preferred_price_range: Optional[PriceRange] = None
    verification_document: Optional[str] = None
    rating: float = 0
    notification_email: bool = True
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        name: str,
        phone: str,
        address: Address,
        *,
        role: str = Role.RENTER.value,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            phone=phone,
            address=address,
            role=role,
        )


@dataclass
class RevocationRecord:
    token: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
