"""EVM nonce sequencing.

The registry is the single source of truth for nonces handed out to
crafted transactions. At most one unresolved reservation exists per
(address, network); a second craft for the same sender gets a
SequencingConflict until the first is confirmed, rejected or abandoned.

Reservation lifecycle:

    reserve() -> RESERVED --mark_submitted()--> SUBMITTED
        |                                          |
        +--release(ABANDONED|REJECTED)             +--release(CONFIRMED|CONSUMED)
        +--expiry (nonce reusable)                 +--expiry (nonce counted as used)
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from coldcraft.errors import SequencingConflict, ValidationError
from coldcraft.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)


class ReservationState(str, Enum):
    RESERVED = "reserved"
    SUBMITTED = "submitted"


class ReleaseOutcome(str, Enum):
    """Why a reservation is released.

    CONFIRMED and CONSUMED mark the nonce as used on chain; REJECTED and
    ABANDONED leave it free for the next craft.
    """
    CONFIRMED = "confirmed"
    CONSUMED = "consumed"
    REJECTED = "rejected"
    ABANDONED = "abandoned"

    @property
    def consumes_nonce(self) -> bool:
        return self in (ReleaseOutcome.CONFIRMED, ReleaseOutcome.CONSUMED)


@dataclass
class NonceReservation:
    """A nonce held for a crafted, not yet resolved transaction."""
    address: str
    network: str
    nonce: int
    expires_at: float
    state: ReservationState = ReservationState.RESERVED


class NonceRegistry:
    """Per-(address, network) nonce reservations.

    Args:
        ttl: Seconds before an unresolved reservation may be reclaimed
        clock: Time source (overridable in tests)
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._locks = KeyedLocks()
        self._reservations: dict[tuple[str, str], NonceReservation] = {}
        self._consumed_through: dict[tuple[str, str], int] = {}

    @staticmethod
    def _key(address: str, network: str) -> tuple[str, str]:
        return address.lower(), network

    def _expire(self, key: tuple[str, str]) -> None:
        reservation = self._reservations.get(key)
        if reservation is None or reservation.expires_at > self._clock():
            return

        if reservation.state == ReservationState.SUBMITTED:
            self._mark_consumed(key, reservation.nonce)
        del self._reservations[key]
        logger.info(
            f"Nonce reservation expired: {reservation.address} on {reservation.network} "
            f"nonce={reservation.nonce} state={reservation.state.value}"
        )

    def _mark_consumed(self, key: tuple[str, str], nonce: int) -> None:
        self._consumed_through[key] = max(self._consumed_through.get(key, -1), nonce)

    def get(self, address: str, network: str) -> Optional[NonceReservation]:
        """Current unexpired reservation, if any."""
        key = self._key(address, network)
        self._expire(key)
        return self._reservations.get(key)

    async def reserve(
        self,
        address: str,
        network: str,
        fetch_chain_nonce: Callable[[], Awaitable[int]],
    ) -> NonceReservation:
        """Atomically reserve the next nonce for a sender.

        The nonce is the larger of the chain's pending nonce and one past the
        highest nonce this registry has seen consumed.

        Args:
            address: Sender address
            network: Network name
            fetch_chain_nonce: Coroutine factory returning the pending nonce

        Raises:
            SequencingConflict: An unexpired unresolved reservation exists
        """
        key = self._key(address, network)
        async with self._locks.hold(key, operation="nonce_reserve"):
            self._expire(key)
            existing = self._reservations.get(key)
            if existing is not None:
                logger.info(
                    f"Nonce conflict for {address} on {network}: "
                    f"nonce {existing.nonce} held until {existing.expires_at:.0f}"
                )
                raise SequencingConflict(address, network, existing.nonce, existing.expires_at)

            chain_nonce = await fetch_chain_nonce()
            nonce = max(chain_nonce, self._consumed_through.get(key, -1) + 1)

            reservation = NonceReservation(
                address=address,
                network=network,
                nonce=nonce,
                expires_at=self._clock() + self.ttl,
            )
            self._reservations[key] = reservation
            logger.info(f"Nonce reserved: {address} on {network} nonce={nonce} (chain={chain_nonce})")
            return reservation

    async def reserve_existing(self, address: str, network: str, nonce: int) -> NonceReservation:
        """Hold an already broadcast nonce for a replacement transaction.

        A submitted reservation for ``nonce`` only has its expiry extended. If
        it has already expired, the nonce must be known as consumed.

        Raises:
            SequencingConflict: A reservation for a different nonce is unresolved
            ValidationError: The nonce was never broadcast
        """
        key = self._key(address, network)
        async with self._locks.hold(key, operation="nonce_replace"):
            self._expire(key)
            existing = self._reservations.get(key)
            if existing is not None and existing.nonce != nonce:
                raise SequencingConflict(address, network, existing.nonce, existing.expires_at)

            if existing is not None:
                if existing.state != ReservationState.SUBMITTED:
                    raise _not_submitted(nonce)
                existing.expires_at = self._clock() + self.ttl
                logger.info(f"Nonce hold extended for replacement: {address} on {network} nonce={nonce}")
                return existing

            if self._consumed_through.get(key, -1) < nonce:
                raise _not_submitted(nonce)

            reservation = NonceReservation(
                address=address,
                network=network,
                nonce=nonce,
                expires_at=self._clock() + self.ttl,
                state=ReservationState.SUBMITTED,
            )
            self._reservations[key] = reservation
            logger.info(f"Nonce held for replacement: {address} on {network} nonce={nonce}")
            return reservation

    async def mark_submitted(self, address: str, network: str, nonce: int) -> None:
        """Record that the transaction holding ``nonce`` reached the node."""
        key = self._key(address, network)
        async with self._locks.hold(key, operation="nonce_submitted"):
            reservation = self._reservations.get(key)
            if reservation is None or reservation.nonce != nonce:
                # Reservation already expired; the nonce is on chain now
                self._mark_consumed(key, nonce)
                return
            reservation.state = ReservationState.SUBMITTED
            reservation.expires_at = self._clock() + self.ttl
            logger.debug(f"Nonce submitted: {address} on {network} nonce={nonce}")

    async def release(self, address: str, network: str, nonce: int, outcome: ReleaseOutcome) -> bool:
        """Resolve a reservation.

        Returns:
            True if a matching reservation was released
        """
        key = self._key(address, network)
        async with self._locks.hold(key, operation="nonce_release"):
            if outcome.consumes_nonce:
                self._mark_consumed(key, nonce)

            reservation = self._reservations.get(key)
            if reservation is None or reservation.nonce != nonce:
                logger.debug(f"No reservation to release: {address} on {network} nonce={nonce}")
                return False

            del self._reservations[key]
            logger.info(f"Nonce released: {address} on {network} nonce={nonce} outcome={outcome.value}")
            return True

    def clear(self) -> None:
        """Drop all reservations (useful for testing)."""
        self._reservations.clear()
        self._consumed_through.clear()
        self._locks.clear()


def _not_submitted(nonce: int) -> ValidationError:
    return ValidationError(
        f"Nonce {nonce} has not been broadcast; abandon or sign the original instead",
        field="transaction",
        rule="not_submitted",
    )
