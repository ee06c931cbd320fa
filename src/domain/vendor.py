# src/domain/vendor.py

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class ById:
    """Route operator stored as a reference to a vendor user."""

    vendor_id: str


@dataclass(frozen=True)
class Embedded:
    """
    Route operator stored inline (name + contact). The owning vendor is
    the route's ``vendor_id``, which may be missing on legacy rows.
    """

    name: str
    contact_email: str | None
    contact_phone: str | None
    vendor_id: str | None


VendorRef = Union[ById, Embedded]


@dataclass(frozen=True)
class ResolvedVendor:
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
