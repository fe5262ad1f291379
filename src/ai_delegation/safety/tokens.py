"""Delegation capability tokens with attenuating caveat chains.

A token is minted for a bearer on a resource. When the bearer sub-delegates,
it attenuates its token: the child carries every parent caveat plus new ones,
never fewer, and never outlives its parent. Revoking a token revokes every
token attenuated from it.

Validation fails closed: revoked, expired or any unmatched caveat denies.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from ai_delegation.clock import Clock, SystemClock, as_utc, from_iso
from ai_delegation.exceptions import AccessDeniedError, NotFoundError, StateError, ValidationError

logger = logging.getLogger(__name__)


class CaveatKind(StrEnum):
    SCOPE = "scope"  # value is a scope prefix
    OPERATION = "operation"  # value is a comma-separated operation list
    TIME = "time"  # value is an ISO-8601 not-after instant
    BUDGET = "budget"  # value is a spending cap


@dataclass(frozen=True)
class Caveat:
    """A single restriction on a token."""

    kind: CaveatKind
    key: str
    value: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", CaveatKind(self.kind))
        if not self.value or not self.value.strip():
            raise ValidationError(f"{self.kind.value} caveat {self.key!r} has an empty value")
        if self.kind is CaveatKind.OPERATION and not self.operations:
            raise ValidationError(f"operation caveat {self.key!r} lists no operations")
        if self.kind is CaveatKind.TIME:
            try:
                from_iso(self.value)
            except ValueError as exc:
                raise ValidationError(f"time caveat {self.key!r} is not ISO-8601: {self.value}") from exc
        if self.kind is CaveatKind.BUDGET:
            try:
                limit = float(self.value)
            except ValueError as exc:
                raise ValidationError(f"budget caveat {self.key!r} is not a number: {self.value}") from exc
            if limit < 0:
                raise ValidationError(f"budget caveat {self.key!r} is negative: {self.value}")

    @property
    def operations(self) -> frozenset[str]:
        return frozenset(op.strip() for op in self.value.split(",") if op.strip())

    @classmethod
    def scope(cls, prefix: str, key: str = "scope") -> Caveat:
        return cls(CaveatKind.SCOPE, key, prefix)

    @classmethod
    def operation(cls, *operations: str, key: str = "ops") -> Caveat:
        return cls(CaveatKind.OPERATION, key, ",".join(operations))

    @classmethod
    def not_after(cls, moment: datetime, key: str = "not_after") -> Caveat:
        return cls(CaveatKind.TIME, key, as_utc(moment).isoformat())

    @classmethod
    def budget(cls, limit: float, key: str = "max_spend") -> Caveat:
        return cls(CaveatKind.BUDGET, key, repr(float(limit)))


@dataclass
class CapabilityToken:
    token_id: str
    granter_id: str
    bearer_id: str
    resource: str
    caveats: tuple[Caveat, ...]
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    parent_id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) >= as_utc(self.expires_at)

    def caveats_of(self, kind: CaveatKind) -> list[Caveat]:
        return [c for c in self.caveats if c.kind is kind]


class TokenAuthority:
    """Mints, attenuates, validates and revokes capability tokens.

    Keeps every token it issued so revocation can walk the delegation chain.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._tokens: dict[str, CapabilityToken] = {}
        self._children: dict[str, list[str]] = {}

    def mint(
        self,
        granter_id: str,
        bearer_id: str,
        resource: str,
        ttl: timedelta,
        caveats: tuple[Caveat, ...] | list[Caveat] = (),
    ) -> CapabilityToken:
        """Issue a root token."""
        if ttl <= timedelta(0):
            raise ValidationError(f"ttl must be positive, got {ttl}")
        now = self.clock.now()
        return self._issue(granter_id, bearer_id, resource, tuple(caveats), now, now + ttl, None)

    def attenuate(
        self,
        token: CapabilityToken,
        new_bearer_id: str,
        additional_caveats: tuple[Caveat, ...] | list[Caveat] = (),
        ttl: timedelta | None = None,
    ) -> CapabilityToken:
        """Derive a narrower token for a sub-delegate.

        Raises:
            NotFoundError: the parent was not issued by this authority
            StateError: the parent is revoked or expired
        """
        parent = self.get(token.token_id)
        now = self.clock.now()
        if parent.revoked or token.revoked:
            raise StateError(f"cannot attenuate revoked token {token.token_id}")
        if parent.is_expired(now):
            raise StateError(f"cannot attenuate expired token {token.token_id}")

        expires_at = parent.expires_at
        if ttl is not None:
            expires_at = min(expires_at, now + ttl)

        child = self._issue(
            parent.bearer_id,
            new_bearer_id,
            parent.resource,
            parent.caveats + tuple(additional_caveats),
            now,
            expires_at,
            parent.token_id,
        )
        logger.info(
            "Token %s attenuated to %s for %s (+%d caveats)",
            parent.token_id,
            child.token_id,
            new_bearer_id,
            len(additional_caveats),
        )
        return child

    def validate(
        self,
        token: CapabilityToken,
        operation: str,
        scope: str,
        amount: float | None = None,
    ) -> None:
        """Check that ``token`` permits ``operation`` within ``scope``.

        Raises:
            AccessDeniedError: with the first reason access is refused
        """
        current = self._tokens.get(token.token_id, token)
        now = self.clock.now()
        if current.revoked or token.revoked:
            raise AccessDeniedError(f"token {token.token_id} revoked")
        if current.is_expired(now):
            raise AccessDeniedError(f"token {token.token_id} expired")

        for caveat in current.caveats:
            if caveat.kind is CaveatKind.OPERATION:
                if operation not in caveat.operations:
                    raise AccessDeniedError(
                        f"operation {operation!r} not permitted (allowed: {caveat.value})"
                    )
            elif caveat.kind is CaveatKind.SCOPE:
                if not scope.startswith(caveat.value):
                    raise AccessDeniedError(
                        f"scope {scope!r} outside permitted boundary {caveat.value!r}"
                    )
            elif caveat.kind is CaveatKind.TIME:
                if now > from_iso(caveat.value):
                    raise AccessDeniedError(f"caveat {caveat.key!r} lapsed at {caveat.value}")
            elif caveat.kind is CaveatKind.BUDGET:
                if amount is not None and amount > float(caveat.value):
                    raise AccessDeniedError(
                        f"amount {amount} exceeds budget caveat {caveat.key!r} ({caveat.value})"
                    )

    def revoke(self, token_id: str) -> list[str]:
        """Revoke a token and all of its descendants. Returns the revoked ids."""
        if token_id not in self._tokens:
            raise NotFoundError(f"unknown token {token_id}")
        revoked: list[str] = []
        pending = [token_id]
        while pending:
            current_id = pending.pop()
            token = self._tokens[current_id]
            if not token.revoked:
                token.revoked = True
                revoked.append(current_id)
            pending.extend(self._children.get(current_id, []))
        logger.warning("Revoked %d token(s) rooted at %s", len(revoked), token_id)
        return revoked

    def revoke_bearer(self, agent_id: str) -> list[str]:
        """Revoke every live token held by an agent, plus its descendants."""
        revoked: list[str] = []
        for token in self.held_by(agent_id):
            revoked.extend(self.revoke(token.token_id))
        return revoked

    def held_by(self, bearer_id: str, resource: str | None = None) -> list[CapabilityToken]:
        """Live tokens held by an agent, optionally on one resource."""
        return [
            t
            for t in self._tokens.values()
            if t.bearer_id == bearer_id
            and not t.revoked
            and (resource is None or t.resource == resource)
        ]

    def get(self, token_id: str) -> CapabilityToken:
        try:
            return self._tokens[token_id]
        except KeyError:
            raise NotFoundError(f"unknown token {token_id}") from None

    def lineage(self, token_id: str) -> list[CapabilityToken]:
        """The chain from the root token down to ``token_id``."""
        chain = [self.get(token_id)]
        while chain[-1].parent_id is not None:
            chain.append(self.get(chain[-1].parent_id))
        return list(reversed(chain))

    def _issue(
        self,
        granter_id: str,
        bearer_id: str,
        resource: str,
        caveats: tuple[Caveat, ...],
        issued_at: datetime,
        expires_at: datetime,
        parent_id: str | None,
    ) -> CapabilityToken:
        for caveat in caveats:
            if not isinstance(caveat, Caveat):
                raise ValidationError(f"caveat set contains a non-caveat: {caveat!r}")
        token = CapabilityToken(
            token_id=f"dct-{uuid.uuid4().hex[:12]}",
            granter_id=granter_id,
            bearer_id=bearer_id,
            resource=resource,
            caveats=caveats,
            issued_at=issued_at,
            expires_at=expires_at,
            parent_id=parent_id,
        )
        self._tokens[token.token_id] = token
        if parent_id is not None:
            self._children.setdefault(parent_id, []).append(token.token_id)
        return token
