"""Anonymization of customer records."""

from .models import Address, CustomerRecord, AnonymizedCustomerRecord
from .transform import (
    CustomerAnonymizer,
    TransformPreconditionError,
    anonymize_email,
    anonymize_value,
    DEFAULT_RETAINED_FIELDS,
)

__all__ = [
    "Address",
    "CustomerRecord",
    "AnonymizedCustomerRecord",
    "CustomerAnonymizer",
    "TransformPreconditionError",
    "anonymize_email",
    "anonymize_value",
    "DEFAULT_RETAINED_FIELDS",
]
