"""Identity deduplication by natural keys (email, phone).

Records are processed strictly in input order. Each record either joins the
identity already registered under its email or phone, or becomes a new identity
under its own candidate id. Every source id that was folded into an identity is
kept in the :class:`MergeTable` so later passes can map any of them back to the
single canonical id.

When the email and the phone of one record point at two *different* existing
identities, the phone match wins. The decision is recorded as an
:class:`IdentityConflict` so callers can review it.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, Any, Final

if TYPE_CHECKING:
    from collections.abc import Iterable

    from docmigrate.domain.model import Identity

log = getLogger(__name__)

IDENTITY_FIELDS: Final[tuple[str, ...]] = ("email", "phone", "name", "labels", "prefs")


def normalize_email(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized or None


def normalize_phone(value: object) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    normalized = "".join(str(value).split())
    return normalized or None


def split_identity_payload(
    payload: Mapping[str, Any],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split ``payload`` into (identity-only fields, remaining domain fields)."""

    identity: dict[str, Any] = {}
    domain: dict[str, Any] = {}
    for key, value in payload.items():
        if key in IDENTITY_FIELDS:
            if value is not None:
                identity[key] = value
        else:
            domain[key] = value
    if "email" in identity:
        identity["email"] = normalize_email(identity["email"])
    if "phone" in identity:
        identity["phone"] = normalize_phone(identity["phone"])
    return {key: value for key, value in identity.items() if value is not None}, domain


@dataclass(slots=True)
class MergeTable:
    """Canonical identity id to the source ids unified into it."""

    _buckets: dict[str, list[str]] = field(default_factory=dict[str, list[str]])
    _owners: dict[str, str] = field(default_factory=dict[str, str])

    def add(self, canonical_id: str, source_id: str) -> bool:
        """Append ``source_id`` to ``canonical_id``'s bucket.

        Returns ``False`` when the source id already belongs to a bucket; a source id
        is never listed under two canonical ids.
        """

        if source_id in self._owners:
            return False
        self._owners[source_id] = canonical_id
        self._buckets.setdefault(canonical_id, []).append(source_id)
        return True

    def canonical_for(self, source_id: str) -> str | None:
        return self._owners.get(source_id)

    def sources_for(self, canonical_id: str) -> tuple[str, ...]:
        return tuple(self._buckets.get(canonical_id, ()))

    def buckets(self) -> dict[str, tuple[str, ...]]:
        return {canonical: tuple(sources) for canonical, sources in self._buckets.items()}

    def __contains__(self, canonical_id: object) -> bool:
        return canonical_id in self._buckets

    def __len__(self) -> int:
        return len(self._buckets)


@dataclass(slots=True, kw_only=True, frozen=True)
class IdentityConflict:
    """Email and phone of one record matched two different identities."""

    source_id: str | None
    email: str
    phone: str
    email_winner: str
    phone_winner: str

    @property
    def chosen(self) -> str:
        return self.phone_winner


@dataclass(slots=True, kw_only=True, frozen=True)
class IdentityResolution:
    canonical_id: str
    merged: bool
    identity_payload: dict[str, Any]
    domain_payload: dict[str, Any]
    conflict: IdentityConflict | None = None


class IdentityDeduplicator:
    """Collapse identity records sharing an email or phone into one canonical id."""

    def __init__(self) -> None:
        self.merge_table = MergeTable()
        self.conflicts: list[IdentityConflict] = []
        self._by_email: dict[str, str] = {}
        self._by_phone: dict[str, str] = {}

    def seed(self, identities: Iterable[Identity]) -> int:
        """Register natural keys of identities that already exist in the store."""

        seeded = 0
        for identity in identities:
            registered = False
            email = normalize_email(identity.email)
            if email and email not in self._by_email:
                self._by_email[email] = identity.id
                registered = True
            phone = normalize_phone(identity.phone)
            if phone and phone not in self._by_phone:
                self._by_phone[phone] = identity.id
                registered = True
            seeded += int(registered)
        log.debug(f"Seeded {seeded} existing identities")
        return seeded

    def canonical_for(self, source_id: str) -> str | None:
        return self.merge_table.canonical_for(source_id)

    def resolve(
        self,
        payload: Mapping[str, Any],
        *,
        source_id: str | None,
        candidate_id: str,
    ) -> IdentityResolution:
        """Resolve one transformed identity record to its canonical id."""

        email = normalize_email(payload.get("email"))
        phone = normalize_phone(payload.get("phone"))
        email_winner = self._by_email.get(email) if email else None
        phone_winner = self._by_phone.get(phone) if phone else None

        conflict: IdentityConflict | None = None
        if email and phone and email_winner and phone_winner and email_winner != phone_winner:
            conflict = IdentityConflict(
                source_id=source_id,
                email=email,
                phone=phone,
                email_winner=email_winner,
                phone_winner=phone_winner,
            )
            self.conflicts.append(conflict)
            log.warning(
                f"Identity {source_id!r} matches {email_winner} by email and "
                f"{phone_winner} by phone; using the phone match"
            )

        winner = phone_winner or email_winner
        canonical_id = winner or candidate_id
        if email and email not in self._by_email:
            self._by_email[email] = canonical_id
        if phone and phone not in self._by_phone:
            self._by_phone[phone] = canonical_id
        if source_id is not None:
            self.merge_table.add(canonical_id, source_id)

        identity_payload, domain_payload = split_identity_payload(payload)
        return IdentityResolution(
            canonical_id=canonical_id,
            merged=winner is not None,
            identity_payload=identity_payload,
            domain_payload=domain_payload,
            conflict=conflict,
        )
