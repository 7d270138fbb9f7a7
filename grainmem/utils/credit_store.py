"""
Credit ledger backends: workspace balances, open reservations and transactions.
"""

import asyncio
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import CreditReservation
from .config import CreditConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Open reservations expire after this long if never resolved
RESERVATION_TTL_SECONDS = 15 * 60


class CreditStoreError(Exception):
    """Custom exception for credit ledger errors."""
    pass


class InsufficientCreditsError(CreditStoreError):
    """The workspace balance cannot cover the estimated cost."""

    def __init__(self, workspace_id: str, required: int, available: Optional[int] = None):
        detail = f', available {available}' if available is not None else ''
        super().__init__(f'Insufficient credits for workspace {workspace_id}: required {required} nano-USD{detail}')
        self.workspace_id = workspace_id
        self.required = required
        self.available = available


@dataclass
class CreditTransaction:
    """A balance movement caused by an embedding reservation."""
    workspace_id: str
    amount_nano_usd: int  # positive credits the workspace, negative charges it
    description: str
    reservation_id: Optional[str] = None
    agent_id: Optional[str] = None
    supplier: str = 'openrouter'
    tool_call: str = 'document-search-embedding'


class ReservationStore(Protocol):

    async def debit(self, workspace_id: str, amount: int) -> int:
        ...

    async def adjust_balance(self, workspace_id: str, delta: int) -> int:
        ...

    async def create_reservation(self, reservation: CreditReservation) -> None:
        ...

    async def pop_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        ...

    async def record_transaction(self, transaction: CreditTransaction) -> None:
        ...


class InMemoryReservationStore:
    """Process-local ledger for tests and single-node development."""

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self.balances: Dict[str, int] = dict(balances or {})
        self.reservations: Dict[str, CreditReservation] = {}
        self.transactions: List[CreditTransaction] = []
        self._lock = asyncio.Lock()

    async def debit(self, workspace_id: str, amount: int) -> int:
        async with self._lock:
            balance = self.balances.get(workspace_id, 0)
            if balance < amount:
                raise InsufficientCreditsError(workspace_id, amount, balance)
            self.balances[workspace_id] = balance - amount
            return self.balances[workspace_id]

    async def adjust_balance(self, workspace_id: str, delta: int) -> int:
        async with self._lock:
            self.balances[workspace_id] = self.balances.get(workspace_id, 0) + delta
            return self.balances[workspace_id]

    async def create_reservation(self, reservation: CreditReservation) -> None:
        self.reservations[reservation.reservation_id] = reservation

    async def pop_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        return self.reservations.pop(reservation_id, None)

    async def record_transaction(self, transaction: CreditTransaction) -> None:
        self.transactions.append(transaction)


class DynamoReservationStore:
    """DynamoDB ledger shared by every worker process."""

    def __init__(self, config: CreditConfig, resource=None):
        """
        Initialize DynamoDB tables.

        Args:
            config: CreditConfig instance with table names
            resource: boto3 DynamoDB resource, created from config if None
        """
        self.config = config
        dynamodb = resource if resource is not None else boto3.resource('dynamodb', region_name=config.region)
        self.workspaces = dynamodb.Table(config.workspaces_table)
        self.reservations = dynamodb.Table(config.reservations_table)
        self.transactions = dynamodb.Table(config.transactions_table)

        logger.info(f'Initialized DynamoDB credit ledger: {config.reservations_table}')

    @staticmethod
    def _workspace_key(workspace_id: str) -> Dict[str, str]:
        return {'pk': f'workspaces/{workspace_id}', 'sk': 'workspace'}

    def _debit(self, workspace_id: str, amount: int) -> int:
        try:
            response = self.workspaces.update_item(Key=self._workspace_key(workspace_id),
                                                   UpdateExpression='SET creditBalance = creditBalance - :amount',
                                                   ConditionExpression=Attr('creditBalance').gte(amount),
                                                   ExpressionAttributeValues={':amount': amount},
                                                   ReturnValues='UPDATED_NEW')
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException':
                raise InsufficientCreditsError(workspace_id, amount)
            logger.error(f'Error debiting workspace {workspace_id}: {e}')
            raise CreditStoreError(f'Failed to debit credits: {e}')
        except BotoCoreError as e:
            raise CreditStoreError(f'Failed to debit credits: {e}')
        return int(response['Attributes']['creditBalance'])

    async def debit(self, workspace_id: str, amount: int) -> int:
        return await asyncio.to_thread(self._debit, workspace_id, amount)

    def _adjust_balance(self, workspace_id: str, delta: int) -> int:
        try:
            response = self.workspaces.update_item(Key=self._workspace_key(workspace_id),
                                                   UpdateExpression='ADD creditBalance :delta',
                                                   ExpressionAttributeValues={':delta': delta},
                                                   ReturnValues='UPDATED_NEW')
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error adjusting balance for workspace {workspace_id}: {e}')
            raise CreditStoreError(f'Failed to adjust credits: {e}')
        return int(response['Attributes']['creditBalance'])

    async def adjust_balance(self, workspace_id: str, delta: int) -> int:
        return await asyncio.to_thread(self._adjust_balance, workspace_id, delta)

    def _create_reservation(self, reservation: CreditReservation) -> None:
        item = {
            'pk': f'credit-reservations/{reservation.reservation_id}',
            'workspaceId': reservation.workspace_id,
            'reservedAmount': reservation.reserved_amount,
            'estimatedTokens': reservation.estimated_tokens,
            'usesByok': reservation.uses_byok,
            'expires': int(time.time()) + RESERVATION_TTL_SECONDS,
        }
        if reservation.agent_id:
            item['agentId'] = reservation.agent_id
        try:
            self.reservations.put_item(Item=item)
        except (ClientError, BotoCoreError) as e:
            raise CreditStoreError(f'Failed to create reservation: {e}')

    async def create_reservation(self, reservation: CreditReservation) -> None:
        await asyncio.to_thread(self._create_reservation, reservation)

    def _pop_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        try:
            response = self.reservations.delete_item(Key={'pk': f'credit-reservations/{reservation_id}'},
                                                     ReturnValues='ALL_OLD')
        except (ClientError, BotoCoreError) as e:
            raise CreditStoreError(f'Failed to resolve reservation: {e}')
        item = response.get('Attributes')
        if not item:
            return None
        return CreditReservation(reservation_id=reservation_id,
                                 workspace_id=item['workspaceId'],
                                 reserved_amount=int(item['reservedAmount']),
                                 estimated_tokens=int(item.get('estimatedTokens', 0)),
                                 uses_byok=bool(item.get('usesByok', False)),
                                 agent_id=item.get('agentId'))

    async def pop_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        # delete_item with ALL_OLD is atomic, so only one resolver ever gets the record
        return await asyncio.to_thread(self._pop_reservation, reservation_id)

    def _record_transaction(self, transaction: CreditTransaction) -> None:
        created_at = datetime.now(timezone.utc).isoformat()
        item = {k: v for k, v in asdict(transaction).items() if v is not None}
        item.update({'pk': f'workspaces/{transaction.workspace_id}', 'sk': f'{created_at}#{uuid.uuid4()}', 'createdAt': created_at})
        try:
            self.transactions.put_item(Item=item)
        except (ClientError, BotoCoreError) as e:
            raise CreditStoreError(f'Failed to record transaction: {e}')

    async def record_transaction(self, transaction: CreditTransaction) -> None:
        await asyncio.to_thread(self._record_transaction, transaction)
