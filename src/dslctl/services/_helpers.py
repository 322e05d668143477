"""Shared service-layer helper functions."""

from __future__ import annotations

from datetime import UTC, datetime


def now_iso() -> str:
    """Current UTC time as standard ISO 8601 (for WAL rows, session timestamps)."""
    return datetime.now(UTC).isoformat()


def normalize_name(name: str) -> str:
    """Case-fold and hyphenate a domain name as typed by a person.

    Examples:
        >>> normalize_name("Hedge Fund Investor")
        'hedge-fund-investor'
        >>> normalize_name("  KYC ")
        'kyc'
    """
    return "-".join(name.strip().casefold().replace("_", " ").split())
