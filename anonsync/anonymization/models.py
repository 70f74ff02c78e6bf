"""
Customer record models.

The producer owns the shape of these documents; the sync engine only reads
them. Extra store fields such as ``_id`` are ignored.
"""

from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Address(BaseModel):
    """Postal address of a customer."""
    model_config = ConfigDict(extra="ignore")

    line1: str = Field(default="", description="Street address")
    line2: str = Field(default="", description="Secondary address")
    postcode: str = Field(default="", description="Postal code")
    city: str = Field(default="", description="City")
    state: str = Field(default="", description="State or region")
    country: str = Field(default="", description="Country")


class CustomerRecord(BaseModel):
    """Customer document as written by the producer."""
    model_config = ConfigDict(extra="ignore")

    firstName: str = Field(..., description="Given name")
    lastName: str = Field(..., description="Family name")
    email: str = Field(..., description="Email address, exactly one '@'")
    address: Address = Field(..., description="Postal address")
    createdAt: datetime = Field(..., description="Creation time, never mutated")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if v.count("@") != 1:
            raise ValueError("email must contain exactly one '@'")
        return v


class AnonymizedCustomerRecord(BaseModel):
    """Customer document with personal fields replaced by digests.

    Same shape as CustomerRecord. Fields outside the retention policy are
    emitted as zero values.
    """

    firstName: str = ""
    lastName: str = ""
    email: str = ""
    address: Address = Field(default_factory=Address)
    createdAt: datetime
