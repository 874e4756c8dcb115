"""
tokenusage - Identity Lookup

The pipeline resolves access keys and users through an injected finder;
it never owns identity storage itself.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from tokenusage.core.errors import IdentityNotFoundError
from tokenusage.db.models import DimensionType


@dataclass(frozen=True)
class Identity:
    """A resolved access key or user."""

    id: str
    kind: DimensionType
    owner_id: Optional[str] = None
    name: Optional[str] = None


class IdentityFinder(ABC):
    """Looks up identities of one kind by id."""

    kind: DimensionType

    @abstractmethod
    async def find_by_id(self, identity_id: str) -> Optional[Identity]:
        """Return the identity, or None when it does not exist."""

    async def find_required_by_id(self, identity_id: str) -> Identity:
        """Return the identity or raise IdentityNotFoundError."""
        identity = await self.find_by_id(identity_id)
        if identity is None:
            raise IdentityNotFoundError(self.kind.value, identity_id)
        return identity


@dataclass
class InMemoryIdentityFinder(IdentityFinder):
    """Dict-backed finder for tests and local mode."""

    kind: DimensionType = DimensionType.ACCESS_KEY
    identities: Dict[str, Identity] = field(default_factory=dict)

    @classmethod
    def with_ids(cls, kind: DimensionType, ids: Iterable[str]) -> "InMemoryIdentityFinder":
        finder = cls(kind=kind)
        for identity_id in ids:
            finder.add(identity_id)
        return finder

    def add(self, identity_id: str, owner_id: Optional[str] = None, name: Optional[str] = None) -> Identity:
        identity = Identity(id=identity_id, kind=self.kind, owner_id=owner_id, name=name)
        self.identities[identity_id] = identity
        return identity

    def remove(self, identity_id: str) -> None:
        self.identities.pop(identity_id, None)

    async def find_by_id(self, identity_id: str) -> Optional[Identity]:
        return self.identities.get(identity_id)
