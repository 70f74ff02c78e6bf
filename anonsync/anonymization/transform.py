"""
Anonymization transform for customer records.

Personal fields are replaced by the first 8 hex characters of their SHA-1
digest. The truncated digest is an anonymization token, not a unique key:
two different values can share a token.
"""

import hashlib
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping

from pydantic import ValidationError

from ..config.settings import RETAINABLE_FIELDS
from ..utils.timeutil import utcnow
from .models import Address, AnonymizedCustomerRecord, CustomerRecord

DIGEST_LENGTH = 8

DEFAULT_RETAINED_FIELDS = ("createdAt",)


class TransformPreconditionError(ValueError):
    """Source record does not have the shape the transform requires."""
    pass


def anonymize_value(value: str) -> str:
    """Return the 8-character lowercase hex token for a value."""
    return hashlib.sha1(value.encode('utf-8')).hexdigest()[:DIGEST_LENGTH]


def anonymize_email(email: str) -> str:
    """Hash the local part of an email address, keeping the domain readable."""
    local, sep, domain = email.partition('@')
    if not sep or '@' in domain:
        raise TransformPreconditionError("email must contain exactly one '@'")
    return f"{anonymize_value(local)}@{domain}"


class CustomerAnonymizer:
    """
    Maps a customer document to its anonymized counterpart.

    Hashed: firstName, lastName, email local part, address line1, line2 and
    postcode. Copied when listed in ``retained_fields``: address.city,
    address.state, address.country, createdAt. Anything else is dropped.

    With ``createdAt`` retained the transform is a pure function of its input.
    Without it, createdAt is stamped with the transform time from ``clock``.

    Example:
        >>> anonymizer = CustomerAnonymizer(retained_fields=["createdAt", "address.country"])
        >>> anonymized = anonymizer(document)
    """

    def __init__(
        self,
        retained_fields: Iterable[str] = DEFAULT_RETAINED_FIELDS,
        clock: Callable[[], datetime] = utcnow
    ):
        retained = frozenset(retained_fields)
        unknown = retained - RETAINABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be retained: {sorted(unknown)}")
        self.retained_fields = retained
        self.clock = clock

    def __call__(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        return self.anonymize(document)

    def anonymize(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Anonymize one customer document.

        Args:
            document: Customer document from the source collection

        Returns:
            New anonymized document, ready to insert

        Raises:
            TransformPreconditionError: If the document is not a well-formed customer
        """
        try:
            customer = CustomerRecord.model_validate(document)
        except ValidationError as e:
            raise TransformPreconditionError(f"Malformed customer record: {e}") from e

        address = Address(
            line1=anonymize_value(customer.address.line1),
            line2=anonymize_value(customer.address.line2),
            postcode=anonymize_value(customer.address.postcode),
            city=self._retain("address.city", customer.address.city, ""),
            state=self._retain("address.state", customer.address.state, ""),
            country=self._retain("address.country", customer.address.country, ""),
        )

        anonymized = AnonymizedCustomerRecord(
            firstName=anonymize_value(customer.firstName),
            lastName=anonymize_value(customer.lastName),
            email=anonymize_email(customer.email),
            address=address,
            createdAt=self._retain("createdAt", customer.createdAt, None) or self.clock(),
        )
        return anonymized.model_dump()

    def _retain(self, field: str, value: Any, default: Any) -> Any:
        return value if field in self.retained_fields else default
