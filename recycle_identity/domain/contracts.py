"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

import hashlib
import unicodedata
from dataclasses import dataclass


@dataclass(slots=True)
class RegisterAccountInput:
    """Raw inputs collected by the registration endpoint."""

    username: str
    email: str
    password: str


def normalize_email(email: str) -> str:
    """Fold case and diacritics so lookups treat equivalent addresses as one."""
    decomposed = unicodedata.normalize("NFKD", email.strip())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.upper()


def email_fingerprint(normalized_email: str) -> str:
    """Short stable digest used in logs and audit metadata in place of the address."""
    return hashlib.sha256(normalized_email.encode("utf-8")).hexdigest()[:12]
