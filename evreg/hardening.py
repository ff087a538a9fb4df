"""
EVREG Validation and Hardening Module

Error taxonomy, input validation and thread-safety primitives shared by
every registry component:

1. Error types raised at the registry boundary
2. Digest and identifier validation with normalization
3. Constant-time identity comparison
4. Thread-safe record maps and invariant checks

Security Model:
    - All inputs are untrusted until validated
    - Validation completes before any state is written
    - Identity comparisons are constant-time
"""

from __future__ import annotations

import hmac
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TypeVar


ZERO_DIGEST = "0" * 64


# =============================================================================
# ERROR TYPES
# =============================================================================

class RegistryError(Exception):
    """Base exception for evidence registry failures."""
    pass


class ValidationError(RegistryError):
    """Raised when submitted input fails a shape check."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class AuthorizationError(RegistryError):
    """Raised when a caller other than the recorded provider attempts a mutation."""

    def __init__(self, evidence_id: str, caller: str):
        self.evidence_id = evidence_id
        self.caller = caller
        super().__init__(
            f"Caller '{caller}' is not the provider of evidence {evidence_id}"
        )


class UnsupportedOperationError(RegistryError):
    """Operation not available in the configured registry variant."""
    pass


class SnapshotError(RegistryError):
    """Persisted registry state is malformed."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the first ValidationError if validation failed."""
        if not self.is_valid:
            raise self.errors[0]

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    HEX64_PATTERN = re.compile(r'^[a-f0-9]{64}$')

    @classmethod
    def validate_digest(cls, value: Any, field_name: str = "digest") -> ValidationResult:
        """Validate a 32-byte digest given as 64 hex chars. Normalizes to lowercase."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected hex string, got {type(value).__name__}", value)
            ])

        normalized = value.strip().lower()
        if normalized.startswith("0x"):
            normalized = normalized[2:]

        if not cls.HEX64_PATTERN.match(normalized):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be 64 hex characters", value)
            ])

        return ValidationResult.success(normalized)

    @classmethod
    def validate_content_hash(cls, value: Any) -> ValidationResult:
        """Validate a content hash: present, well formed and not the zero digest."""
        if value is None or value == "" or value == b"":
            return ValidationResult.failure([
                ValidationError("content_hash", "Content hash is required", value)
            ])

        if isinstance(value, (bytes, bytearray)):
            if len(value) != 32:
                return ValidationResult.failure([
                    ValidationError("content_hash", "Must be 32 bytes", value)
                ])
            value = bytes(value).hex()

        result = cls.validate_digest(value, "content_hash")
        if not result.is_valid:
            return result

        if result.sanitized_value == ZERO_DIGEST:
            return ValidationResult.failure([
                ValidationError("content_hash", "Content hash must not be the zero digest", value)
            ])

        return result

    @classmethod
    def validate_signature(cls, value: Any, field_name: str = "signature") -> ValidationResult:
        """Accept signature bytes verbatim; hex strings are decoded."""
        if value is None:
            return ValidationResult.success(b"")

        if isinstance(value, str):
            text = value[2:] if value.startswith("0x") else value
            try:
                value = bytes.fromhex(text)
            except ValueError:
                return ValidationResult.failure([
                    ValidationError(field_name, "Invalid hex string", value)
                ])

        if isinstance(value, bytearray):
            value = bytes(value)

        if not isinstance(value, bytes):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected bytes, got {type(value).__name__}", value)
            ])

        return ValidationResult.success(value)


def normalize_identifier(value: Any) -> Optional[str]:
    """Normalize an identifier to lowercase hex, or None if it is not one."""
    result = Validators.validate_digest(value, "identifier")
    if not result.is_valid:
        return None
    return result.sanitized_value


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Cryptographic utility functions with security hardening."""

    @staticmethod
    def secure_compare_str(a: str, b: str) -> bool:
        """Constant-time string comparison."""
        return hmac.compare_digest(a.encode(), b.encode())


# =============================================================================
# THREAD SAFETY
# =============================================================================

T = TypeVar('T')


class ThreadSafeDict(Dict[str, T]):
    """Thread-safe dictionary wrapper."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._lock = threading.RLock()

    def __getitem__(self, key: str) -> T:
        with self._lock:
            return super().__getitem__(key)

    def __setitem__(self, key: str, value: T) -> None:
        with self._lock:
            super().__setitem__(key, value)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return super().__contains__(key)

    def __iter__(self):
        with self._lock:
            return iter(list(super().keys()))

    def __len__(self):
        with self._lock:
            return super().__len__()

    def get(self, key: str, default: T = None) -> Optional[T]:
        with self._lock:
            return super().get(key, default)

    def items_snapshot(self) -> List[tuple]:
        """Consistent copy of all items."""
        with self._lock:
            return list(super().items())

    @contextmanager
    def transaction(self):
        """Context manager for atomic multi-operation transactions."""
        with self._lock:
            yield self


class InvariantViolation(RegistryError):
    """Registry invariant violated."""
    pass


class InvariantChecker:
    """Enforces registry invariants."""

    @staticmethod
    def check_monotonic_increase(
        field_name: str,
        old_value: int,
        new_value: int,
    ) -> None:
        """Ensure value only increases."""
        if new_value < old_value:
            raise InvariantViolation(
                f"{field_name} must be monotonically increasing: "
                f"cannot go from {old_value} to {new_value}"
            )
