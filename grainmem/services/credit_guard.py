"""
Credit reservations around billable embedding calls.

Every reservation is resolved exactly once: adjusted to the actual cost after a
successful embedding, or refunded when the embedding fails or is cancelled.
"""

import math
import uuid
from typing import Optional

from ..models.core import CreditReservation, EmbeddingResult, EmbeddingUsage
from ..utils.api_keys import ResolvedApiKey
from ..utils.cancellation import CancellationToken
from ..utils.config import CreditConfig
from ..utils.credit_store import CreditTransaction, InsufficientCreditsError, ReservationStore
from ..utils.embedding import EmbeddingGenerator
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

NANO_USD_PER_USD = 1_000_000_000

__all__ = [
    'CreditReservationGuard',
    'InsufficientCreditsError',
    'estimate_embedding_tokens',
    'format_nano_usd',
    'generate_billed_embedding',
]


def estimate_embedding_tokens(text: str) -> int:
    """Rough token count used for reservations: one token per four characters."""
    return max(1, math.ceil(len(text.strip()) / 4))


def format_nano_usd(amount: int) -> str:
    return f'${amount / NANO_USD_PER_USD:.9f}'


class CreditReservationGuard:
    """Reserve, adjust and refund embedding credits against a ledger."""

    def __init__(self, store: ReservationStore, config: CreditConfig):
        """
        Initialize the guard.

        Args:
            store: Ledger backend holding balances and open reservations
            config: CreditConfig instance with pricing parameters
        """
        self.store = store
        self.config = config

    def cost_from_tokens(self, tokens: int) -> int:
        """Cost of a token count in nano-USD, rounded up."""
        return math.ceil(tokens * self.config.cost_per_million_tokens_usd * NANO_USD_PER_USD / 1_000_000)

    def cost_from_usage(self, usage: Optional[EmbeddingUsage]) -> Optional[int]:
        """Actual cost of a call, or None when the provider reported nothing usable."""
        if usage is None:
            return None
        if usage.cost is not None:
            return math.ceil(usage.cost * self.config.usage_cost_markup * NANO_USD_PER_USD)
        tokens = usage.total_tokens if usage.total_tokens is not None else usage.prompt_tokens
        if tokens is not None:
            return self.cost_from_tokens(tokens)
        return None

    async def reserve(self,
                      workspace_id: str,
                      text: str,
                      uses_byok: bool = False,
                      agent_id: Optional[str] = None) -> CreditReservation:
        """
        Place a reservation for embedding text.

        Args:
            workspace_id: Workspace charged for the call
            text: Text about to be embedded
            uses_byok: Workspace supplied its own key; the reservation charges nothing
            agent_id: Agent the call is made for, recorded on the transaction

        Returns:
            The open reservation

        Raises:
            InsufficientCreditsError: If the balance cannot cover the estimate
        """
        estimated_tokens = estimate_embedding_tokens(text)
        reserved_amount = 0 if uses_byok else self.cost_from_tokens(estimated_tokens)

        reservation = CreditReservation(reservation_id=str(uuid.uuid4()),
                                        workspace_id=workspace_id,
                                        reserved_amount=reserved_amount,
                                        estimated_tokens=estimated_tokens,
                                        uses_byok=uses_byok,
                                        agent_id=agent_id)
        # A debit never exists without a persisted reservation
        await self.store.create_reservation(reservation)

        if reserved_amount > 0:
            try:
                await self.store.debit(workspace_id, reserved_amount)
            except Exception:
                await self.store.pop_reservation(reservation.reservation_id)
                raise

        if uses_byok:
            logger.debug(f'Created audit reservation {reservation.reservation_id} for workspace {workspace_id} (BYOK)')
        else:
            logger.debug(f'Reserved {format_nano_usd(reserved_amount)} for {estimated_tokens} tokens '
                         f'(workspace {workspace_id}, reservation {reservation.reservation_id})')
        return reservation

    async def adjust(self, reservation: CreditReservation, usage: Optional[EmbeddingUsage] = None) -> int:
        """
        Settle a reservation at the actual cost of the call.

        Returns:
            Balance difference applied in nano-USD (positive refunds the workspace)
        """
        stored = await self.store.pop_reservation(reservation.reservation_id)
        if stored is None:
            logger.warning(f'Reservation {reservation.reservation_id} already resolved, ignoring adjust')
            return 0
        if stored.uses_byok:
            logger.debug(f'Resolved BYOK reservation {stored.reservation_id} without charge')
            return 0

        actual_cost = self.cost_from_usage(usage)
        if actual_cost is None:
            actual_cost = stored.reserved_amount
        difference = stored.reserved_amount - actual_cost

        if difference != 0:
            await self.store.adjust_balance(stored.workspace_id, difference)
        await self.store.record_transaction(
            CreditTransaction(workspace_id=stored.workspace_id,
                              amount_nano_usd=-actual_cost,
                              description=f'Embedding generation ({stored.estimated_tokens} estimated tokens)',
                              reservation_id=stored.reservation_id,
                              agent_id=stored.agent_id))

        logger.debug(f'Adjusted reservation {stored.reservation_id}: reserved {format_nano_usd(stored.reserved_amount)}, '
                     f'actual {format_nano_usd(actual_cost)}')
        return difference

    async def refund(self, reservation: CreditReservation) -> int:
        """
        Return a reservation's amount to the workspace.

        Returns:
            Amount refunded in nano-USD
        """
        stored = await self.store.pop_reservation(reservation.reservation_id)
        if stored is None:
            logger.warning(f'Reservation {reservation.reservation_id} already resolved, ignoring refund')
            return 0
        if stored.uses_byok or stored.reserved_amount == 0:
            return 0

        await self.store.adjust_balance(stored.workspace_id, stored.reserved_amount)
        await self.store.record_transaction(
            CreditTransaction(workspace_id=stored.workspace_id,
                              amount_nano_usd=stored.reserved_amount,
                              description='Embedding reservation refund',
                              reservation_id=stored.reservation_id,
                              agent_id=stored.agent_id))

        logger.info(f'Refunded {format_nano_usd(stored.reserved_amount)} to workspace {stored.workspace_id}')
        return stored.reserved_amount


async def generate_billed_embedding(generator: EmbeddingGenerator,
                                    guard: Optional[CreditReservationGuard],
                                    text: str,
                                    resolved_key: ResolvedApiKey,
                                    workspace_id: Optional[str],
                                    cache_key: Optional[str] = None,
                                    cancel_token: Optional[CancellationToken] = None,
                                    agent_id: Optional[str] = None) -> EmbeddingResult:
    """
    Embed text as one billed unit: reserve, generate, then adjust or refund.

    Cache hits are returned without touching the ledger. Concurrent calls for the
    same cache key share one reservation and one provider call.

    Raises:
        InsufficientCreditsError: If the workspace cannot cover the estimate
        EmbeddingError: If generation fails (the reservation is refunded first)
        OperationCancelledError: If cancel_token fires (the reservation is refunded first)
    """
    if not cache_key:
        return await _reserve_and_embed(generator, guard, text, resolved_key, workspace_id, cache_key, cancel_token, agent_id)

    cached = generator.cache.get(cache_key)
    if cached is not None:
        return EmbeddingResult(embedding=cached, from_cache=True)
    return await generator.single_flight(
        cache_key,
        lambda: _reserve_and_embed(generator, guard, text, resolved_key, workspace_id, cache_key, cancel_token, agent_id))


async def _reserve_and_embed(generator: EmbeddingGenerator, guard: Optional[CreditReservationGuard], text: str,
                             resolved_key: ResolvedApiKey, workspace_id: Optional[str], cache_key: Optional[str],
                             cancel_token: Optional[CancellationToken], agent_id: Optional[str]) -> EmbeddingResult:
    if guard is None or not workspace_id:
        return await generator.generate_embedding_with_usage(text, resolved_key.api_key, cache_key, cancel_token)

    reservation = await guard.reserve(workspace_id, text, uses_byok=resolved_key.uses_byok, agent_id=agent_id)

    succeeded = False
    try:
        result = await generator.generate_embedding_with_usage(text, resolved_key.api_key, cache_key, cancel_token)
        succeeded = True
    finally:
        if not succeeded:
            await guard.refund(reservation)

    if result.from_cache:
        # Filled by a concurrent caller while this one waited
        await guard.refund(reservation)
    else:
        await guard.adjust(reservation, result.usage)
    return result
