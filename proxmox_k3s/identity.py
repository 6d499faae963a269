"""
VM identity allocation

One inventory snapshot is taken per run and the whole block of identities
(control node plus workers) is reserved against it. No other component mints
identities.
"""

import logging
from typing import Iterable, List, Optional, Set

from .errors import IdentityExhausted, InvalidConfig

logger = logging.getLogger(__name__)

# Proxmox accepts VMIDs up to 999999999
MAX_IDENTITY = 999_999_999


def next_identity(existing: Set[int], floor: int = 100) -> int:
    """Return the first identity at or above ``floor`` not in ``existing``"""
    candidate = floor
    while candidate in existing:
        candidate += 1
    if candidate > MAX_IDENTITY:
        raise IdentityExhausted(f"No free VM identity at or above {floor}")
    return candidate


class IdentityAllocator:
    """Hands out identities from a single inventory snapshot"""

    def __init__(self, inventory: Iterable[int], floor: int = 100):
        self.floor = floor
        self._taken: Set[int] = set(inventory)
        self._reserved: List[int] = []

    @property
    def reserved(self) -> List[int]:
        return list(self._reserved)

    def reserve(self, identity: int) -> int:
        """Claim a fixed identity; it must not exist on the host or be claimed already"""
        if identity in self._taken:
            raise InvalidConfig(f"VM identity {identity} is already in use")
        self._taken.add(identity)
        self._reserved.append(identity)
        return identity

    def allocate(self) -> int:
        identity = next_identity(self._taken, self.floor)
        self._taken.add(identity)
        self._reserved.append(identity)
        return identity

    def allocate_block(self, fixed: List[Optional[int]]) -> List[int]:
        """Resolve one identity per slot: fixed values are reserved, None slots allocated

        Fixed identities are reserved before any free slot is filled so an
        auto-allocated id never lands on a later fixed one.
        """
        for identity in fixed:
            if identity is not None:
                self.reserve(identity)
        result = [identity if identity is not None else self.allocate() for identity in fixed]
        logger.info(f"Reserved VM identities: {result}")
        return result
