from __future__ import annotations

import re
import secrets

from tenantplane.core.errors import ValidationError


SLUG_MAX_LENGTH = 50
SUFFIX_LENGTH = 6
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_NON_SLUG = re.compile(r"[^a-z0-9]+")


def derive_slug(name: str) -> str:
    slug = _NON_SLUG.sub("-", name.lower()).strip("-")[:SLUG_MAX_LENGTH].rstrip("-")
    if not slug:
        raise ValidationError(f"Organization name {name!r} does not yield a usable slug")
    return slug


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def candidate_slugs(name: str, attempts: int) -> list[str]:
    # First candidate is the bare slug; later ones disambiguate with a random base36 suffix.
    base = derive_slug(name)
    return [base] + [f"{base}-{random_suffix()}" for _ in range(max(0, attempts - 1))]
