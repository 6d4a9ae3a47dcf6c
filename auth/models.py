"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store and the workflow modules do the work.

The accounts table is flat, but the domain nests the two token-bearing
sub-records (Registration, ResetCredential) so workflow code reads the way the
lifecycle is described: account.registration.status, account.reset.token.

Timestamps are ISO 8601 UTC strings, as persisted by auth/store.py.

Layer rule: no imports from api/, mail/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_DENIED = "denied"


@dataclass
class Registration:
    """Registration lifecycle sub-record.

    status None means UNREGISTERED (no workflow decision yet). registered is
    True only together with status == "approved" and a date -- the store
    writes all three in one conditional update.
    """

    date: str | None = None
    status: str | None = None  # "pending", "approved", "denied" or None
    registered: bool = False
    token: str | None = None  # outstanding confirmation token, single use


@dataclass
class ResetCredential:
    token: str | None = None
    expires: str | None = None


@dataclass
class Account:
    """An onboarding account.

    password_digest is None for federated (Google) accounts that never set a
    local password. It is excluded from every outward representation -- api/
    response models list their fields explicitly.
    """

    email: str
    id: str | None = None
    password_digest: str | None = field(default=None, repr=False)
    external_id: str | None = None
    role: str = ROLE_USER
    registration: Registration = field(default_factory=Registration)
    reset: ResetCredential = field(default_factory=ResetCredential)
    archived: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_registered(self) -> bool:
        return self.registration.registered and self.registration.status == STATUS_APPROVED

    @property
    def is_active(self) -> bool:
        return self.archived is None


@dataclass
class WhitelistEntry:
    """An exact email, or a domain, exempted from manual admin approval.

    Exactly one of email / domain is set. A domain entry also covers its
    subdomains (see AccountStore.is_whitelisted).
    """

    email: str | None = None
    domain: str | None = None
    id: int | None = None
    created_at: str | None = None
