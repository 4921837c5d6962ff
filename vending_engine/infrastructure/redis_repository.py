"""
Redis Repository implementations.

Provides type-safe, domain-specific access to Redis state storage.
Each repository encapsulates Redis keys and operations for its domain.

Read-modify-write operations run as optimistic transactions: the keys
involved are WATCHed, read, and rewritten inside MULTI/EXEC. A concurrent
writer aborts the EXEC and the whole body is retried.
"""

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import ConnectionError as RedisConnError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from vending_engine.core.exceptions import (
    ConcurrentUpdateError,
    OrderNotFoundError,
    RedisConnectionError,
    SlotNotFoundError,
)
from vending_engine.core.models import (
    DispenseLog,
    Machine,
    Order,
    OrderItem,
    Payment,
    Product,
    Slot,
    StockLogEntry,
)
from vending_engine.core.value_objects import OrderStatus
from vending_engine.loggers import logger


T = TypeVar("T")

DEFAULT_MAX_RETRIES = 10


# =============================================================================
# Base Repository
# =============================================================================


class RedisStateRepository:
    """
    Base repository for Redis state operations.

    Provides common Redis operations with error handling.
    """

    def __init__(self, redis: Redis, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        """
        Initialize the repository.

        Args:
            redis: Redis client instance.
            max_retries: Attempts for optimistic transactions.
        """
        self._redis = redis
        self._max_retries = max_retries

    async def get_hash(self, key: str) -> dict[str, str]:
        """Get all fields of a hash."""
        try:
            return await self._redis.hgetall(key)
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

    async def set_hash(self, key: str, mapping: dict[str, str]) -> None:
        """Write fields of a hash."""
        try:
            await self._redis.hset(key, mapping=mapping)
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

    async def get_list(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        """Get a range of a list."""
        try:
            return await self._redis.lrange(key, start, end)
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

    async def get_set_members(self, key: str) -> set[str]:
        """Get all members of a set."""
        try:
            return await self._redis.smembers(key)
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

    async def transaction(
        self,
        keys: list[str],
        body: Callable[[Pipeline], Awaitable[T]],
    ) -> T:
        """
        Run `body` as an optimistic transaction over `keys`.

        The body reads through the pipeline while the keys are watched,
        then calls `pipe.multi()` and buffers its writes. Domain errors
        raised by the body abort without writing anything.

        Args:
            keys: Keys to watch.
            body: Async callable receiving the pipeline.

        Returns:
            Whatever the body returned on the committed attempt.

        Raises:
            ConcurrentUpdateError: If every attempt lost a race.
        """
        try:
            for attempt in range(1, self._max_retries + 1):
                async with self._redis.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(*keys)
                        result = await body(pipe)
                        await pipe.execute()
                        return result
                    except WatchError:
                        logger.debug(f"Write conflict on {keys}, retry {attempt}")
                        continue
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

        raise ConcurrentUpdateError(
            f"Gave up after {self._max_retries} conflicting writes",
            details={"keys": keys},
        )


# =============================================================================
# Product Repository
# =============================================================================


class ProductRepository(RedisStateRepository):
    """
    Repository for catalog products (read only to the engine).

    Keys:
    - product:{id}: Product hash
    """

    @staticmethod
    def key(product_id: int) -> str:
        return f"product:{product_id}"

    async def get(self, product_id: int) -> Optional[Product]:
        """Get a product by id."""
        data = await self.get_hash(self.key(product_id))
        return Product.from_hash(data) if data else None

    async def save(self, product: Product) -> None:
        """Provision or replace a product."""
        await self.set_hash(self.key(product.id), product.to_hash())


# =============================================================================
# Stock Log Repository
# =============================================================================


class StockLogRepository(RedisStateRepository):
    """
    Repository for the append-only stock audit trail.

    Keys:
    - stock_logs:slot:{slot_id}: Entries for a slot, oldest first
    - stock_logs:machine:{machine_id}: Entries for a machine, newest first
    """

    @staticmethod
    def slot_key(slot_id: int) -> str:
        return f"stock_logs:slot:{slot_id}"

    @staticmethod
    def machine_key(machine_id: str) -> str:
        return f"stock_logs:machine:{machine_id}"

    @classmethod
    def buffer_append(cls, pipe: Pipeline, entry: StockLogEntry) -> None:
        """Queue an entry on a pipeline already in MULTI mode."""
        raw = entry.to_json()
        pipe.rpush(cls.slot_key(entry.slot_id), raw)
        pipe.lpush(cls.machine_key(entry.machine_id), raw)

    async def list_for_slot(self, slot_id: int) -> list[StockLogEntry]:
        """All entries of a slot in the order they were written."""
        raw = await self.get_list(self.slot_key(slot_id))
        return [StockLogEntry.from_json(item) for item in raw]

    async def list_for_machine(self, machine_id: str) -> list[StockLogEntry]:
        """All entries of a machine, newest first."""
        raw = await self.get_list(self.machine_key(machine_id))
        return [StockLogEntry.from_json(item) for item in raw]


# =============================================================================
# Slot Repository
# =============================================================================


class SlotRepository(RedisStateRepository):
    """
    Repository for slot state.

    Keys:
    - slot:{id}: Slot hash
    - machine:{machine_id}:slots: Hash of slot_number -> slot id
    - slot:{id}:open_attempts: Set of open dispense attempt ids
    """

    @staticmethod
    def key(slot_id: int) -> str:
        return f"slot:{slot_id}"

    @staticmethod
    def index_key(machine_id: str) -> str:
        return f"machine:{machine_id}:slots"

    @staticmethod
    def open_attempts_key(slot_id: int) -> str:
        return f"slot:{slot_id}:open_attempts"

    async def save(self, slot: Slot, entry: Optional[StockLogEntry] = None) -> None:
        """Provision or replace a slot and index it on its machine, with its log entry."""
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self.key(slot.id), mapping=slot.to_hash())
                pipe.hset(self.index_key(slot.machine_id), str(slot.slot_number), str(slot.id))
                pipe.sadd(MachineRepository.INDEX_KEY, slot.machine_id)
                if entry is not None:
                    StockLogRepository.buffer_append(pipe, entry)
                await pipe.execute()
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

    async def get(self, slot_id: int) -> Optional[Slot]:
        """Get a slot by id."""
        data = await self.get_hash(self.key(slot_id))
        return Slot.from_hash(data) if data else None

    async def require(self, slot_id: int) -> Slot:
        """Get a slot by id or raise SlotNotFoundError."""
        slot = await self.get(slot_id)
        if slot is None:
            raise SlotNotFoundError(f"Slot not found: {slot_id}", details={"slot_id": slot_id})
        return slot

    async def get_by_number(self, machine_id: str, slot_number: int) -> Optional[Slot]:
        """Resolve a machine's slot number to its slot."""
        try:
            slot_id = await self._redis.hget(self.index_key(machine_id), str(slot_number))
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e
        if slot_id is None:
            return None
        return await self.get(int(slot_id))

    async def list_for_machine(self, machine_id: str) -> list[Slot]:
        """All slots of a machine ordered by slot number."""
        index = await self.get_hash(self.index_key(machine_id))
        slots = []
        for slot_id in index.values():
            slot = await self.get(int(slot_id))
            if slot is not None:
                slots.append(slot)
        return sorted(slots, key=lambda s: s.slot_number)

    async def count_open_attempts(self, slot_id: int) -> int:
        """Number of dispense attempts still waiting for confirmation."""
        try:
            return await self._redis.scard(self.open_attempts_key(slot_id))
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

    async def release_attempt(self, slot_id: int, attempt_id: str) -> None:
        """Stop counting an attempt as in flight on its slot."""
        try:
            await self._redis.srem(self.open_attempts_key(slot_id), attempt_id)
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

    async def apply_stock_change(
        self,
        slot_id: int,
        compute: Callable[[Slot, int], Optional[StockLogEntry]],
        release_attempt: Optional[str] = None,
    ) -> tuple[Slot, Optional[StockLogEntry]]:
        """
        Compare-and-set a slot's stock together with its log entry.

        `compute` receives the slot and its open attempt count as read
        under WATCH and returns the log entry to write, or None to leave
        the slot untouched. The slot's new stock is the entry's
        `quantity_after`.

        `release_attempt` is removed from the slot's in-flight set in the
        same transaction as the write.

        Returns:
            The slot as written (or as read when nothing was written)
            and the entry, if any.
        """
        slot_key = self.key(slot_id)
        open_key = self.open_attempts_key(slot_id)

        async def body(pipe: Pipeline) -> tuple[Slot, Optional[StockLogEntry]]:
            data = await pipe.hgetall(slot_key)
            if not data:
                raise SlotNotFoundError(f"Slot not found: {slot_id}", details={"slot_id": slot_id})
            slot = Slot.from_hash(data)
            open_attempts = await pipe.scard(open_key)

            entry = compute(slot, open_attempts)
            pipe.multi()
            if entry is None:
                return slot, None

            slot.current_stock = entry.quantity_after
            pipe.hset(slot_key, "current_stock", str(slot.current_stock))
            StockLogRepository.buffer_append(pipe, entry)
            if release_attempt is not None:
                pipe.srem(open_key, release_attempt)
            return slot, entry

        return await self.transaction([slot_key, open_key], body)


# =============================================================================
# Machine Repository
# =============================================================================


class MachineRepository(RedisStateRepository):
    """
    Repository for machine connectivity records.

    Keys:
    - machine:{id}: Machine hash
    - machines: Set of known machine ids
    """

    INDEX_KEY = "machines"

    @staticmethod
    def key(machine_id: str) -> str:
        return f"machine:{machine_id}"

    async def get(self, machine_id: str) -> Optional[Machine]:
        data = await self.get_hash(self.key(machine_id))
        return Machine.from_hash(data) if data else None

    async def save(self, machine: Machine) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self.key(machine.id), mapping=machine.to_hash())
                pipe.sadd(self.INDEX_KEY, machine.id)
                await pipe.execute()
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e


# =============================================================================
# Order Repository
# =============================================================================


class OrderRepository(RedisStateRepository):
    """
    Repository for orders, their items and their payments.

    Keys:
    - order:{id}: Order hash
    - order:{id}:items: OrderItem JSON rows (multi-item orders only)
    - payment:{order_id}: Payment hash
    - orders:machine:{machine_id}: Sorted set of order ids by creation time
    - orders:pending: Sorted set of PENDING order ids by expiry time
    """

    PENDING_KEY = "orders:pending"

    @staticmethod
    def key(order_id: str) -> str:
        return f"order:{order_id}"

    @staticmethod
    def items_key(order_id: str) -> str:
        return f"order:{order_id}:items"

    @staticmethod
    def payment_key(order_id: str) -> str:
        return f"payment:{order_id}"

    @staticmethod
    def machine_key(machine_id: str) -> str:
        return f"orders:machine:{machine_id}"

    async def create(
        self,
        slot_ids: list[int],
        build: Callable[[dict[int, Slot]], Awaitable[tuple[Order, list[OrderItem], Payment]]],
    ) -> tuple[Order, list[OrderItem], Payment]:
        """
        Atomically create an order with its items and payment.

        Every slot involved is watched and re-read; `build` validates the
        slots and returns the rows to write. If `build` raises, or any
        slot changes before EXEC, no row is written.

        Args:
            slot_ids: Slots the order draws from.
            build: Async callable mapping slot id -> Slot to the new rows.

        Returns:
            The order, its items and its payment as written.
        """
        slot_keys = [SlotRepository.key(slot_id) for slot_id in slot_ids]

        async def body(pipe: Pipeline) -> tuple[Order, list[OrderItem], Payment]:
            slots: dict[int, Slot] = {}
            for slot_id, slot_key in zip(slot_ids, slot_keys):
                data = await pipe.hgetall(slot_key)
                if not data:
                    raise SlotNotFoundError(
                        f"Slot not found: {slot_id}", details={"slot_id": slot_id}
                    )
                slots[slot_id] = Slot.from_hash(data)

            order, items, payment = await build(slots)

            pipe.multi()
            pipe.hset(self.key(order.id), mapping=order.to_hash())
            if items:
                pipe.rpush(self.items_key(order.id), *(item.to_json() for item in items))
            pipe.hset(self.payment_key(order.id), mapping=payment.to_hash())
            pipe.zadd(self.machine_key(order.machine_id), {order.id: order.created_at.timestamp()})
            pipe.zadd(self.PENDING_KEY, {order.id: order.expires_at.timestamp()})
            return order, items, payment

        return await self.transaction(slot_keys, body)

    async def get(self, order_id: str) -> Optional[Order]:
        data = await self.get_hash(self.key(order_id))
        return Order.from_hash(data) if data else None

    async def require(self, order_id: str) -> Order:
        order = await self.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def get_items(self, order_id: str) -> list[OrderItem]:
        raw = await self.get_list(self.items_key(order_id))
        return [OrderItem.from_json(item) for item in raw]

    async def get_payment(self, order_id: str) -> Optional[Payment]:
        data = await self.get_hash(self.payment_key(order_id))
        return Payment.from_hash(data) if data else None

    async def update(
        self,
        order_id: str,
        mutate: Callable[[Order, Payment], T],
    ) -> tuple[Order, Payment, T]:
        """
        Read-modify-write an order and its payment as one unit.

        `mutate` receives both records as read under WATCH, changes them
        in place (or raises to abort) and returns a value passed back to
        the caller. Both hashes are rewritten on commit.
        """
        order_key = self.key(order_id)
        payment_key = self.payment_key(order_id)

        async def body(pipe: Pipeline) -> tuple[Order, Payment, T]:
            order_data = await pipe.hgetall(order_key)
            if not order_data:
                raise OrderNotFoundError(order_id)
            payment_data = await pipe.hgetall(payment_key)
            order = Order.from_hash(order_data)
            payment = Payment.from_hash(payment_data) if payment_data else Payment(
                order_id=order_id, gateway_name="", amount=order.total_amount
            )

            result = mutate(order, payment)

            pipe.multi()
            pipe.hset(order_key, mapping=order.to_hash())
            pipe.hset(payment_key, mapping=payment.to_hash())
            if order.status != OrderStatus.PENDING:
                pipe.zrem(self.PENDING_KEY, order_id)
            return order, payment, result

        return await self.transaction([order_key, payment_key], body)

    async def list_for_machine(
        self,
        machine_id: str,
        status: Optional[OrderStatus] = None,
    ) -> list[Order]:
        """Orders of a machine, newest first, optionally filtered by status."""
        try:
            order_ids = await self._redis.zrevrange(self.machine_key(machine_id), 0, -1)
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

        orders = []
        for order_id in order_ids:
            order = await self.get(order_id)
            if order is None:
                continue
            if status is not None and order.status != status:
                continue
            orders.append(order)
        return orders

    async def overdue_pending(self, now: datetime) -> list[str]:
        """Ids of PENDING orders whose expiry is before `now`."""
        try:
            return await self._redis.zrangebyscore(self.PENDING_KEY, "-inf", f"({now.timestamp()}")
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e


# =============================================================================
# Dispense Log Repository
# =============================================================================


class DispenseLogRepository(RedisStateRepository):
    """
    Repository for dispense attempts.

    Keys:
    - dispense_log:{id}: Attempt hash
    - dispense_logs:order:{order_id}: Attempt ids of an order, oldest first
    - dispense_logs:machine:{machine_id}: Attempt ids of a machine, newest first
    - dispense_logs:open: Ids of attempts waiting for confirmation
    - slot:{slot_id}:open_attempts: Same, per slot
    """

    OPEN_KEY = "dispense_logs:open"

    @staticmethod
    def key(attempt_id: str) -> str:
        return f"dispense_log:{attempt_id}"

    @staticmethod
    def order_key(order_id: str) -> str:
        return f"dispense_logs:order:{order_id}"

    @staticmethod
    def machine_key(machine_id: str) -> str:
        return f"dispense_logs:machine:{machine_id}"

    async def open(self, attempt: DispenseLog) -> None:
        """Persist a freshly sent attempt and mark it open."""
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self.key(attempt.id), mapping=attempt.to_hash())
                pipe.rpush(self.order_key(attempt.order_id), attempt.id)
                pipe.lpush(self.machine_key(attempt.machine_id), attempt.id)
                pipe.sadd(self.OPEN_KEY, attempt.id)
                pipe.sadd(SlotRepository.open_attempts_key(attempt.slot_id), attempt.id)
                await pipe.execute()
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

    async def close(
        self,
        attempt_id: str,
        apply: Callable[[DispenseLog], None],
        release_slot: bool = True,
    ) -> Optional[DispenseLog]:
        """
        Close an open attempt exactly once.

        With `release_slot` False the attempt keeps counting as in flight
        on its slot until `SlotRepository.release_attempt` or a stock
        change carrying its id removes it.

        Returns:
            The closed attempt, or None when it was already closed.
        """
        attempt_key = self.key(attempt_id)

        async def body(pipe: Pipeline) -> Optional[DispenseLog]:
            data = await pipe.hgetall(attempt_key)
            attempt = DispenseLog.from_hash(data)
            pipe.multi()
            if not attempt.is_open:
                return None

            apply(attempt)
            pipe.hset(attempt_key, mapping=attempt.to_hash())
            pipe.srem(self.OPEN_KEY, attempt_id)
            if release_slot:
                pipe.srem(SlotRepository.open_attempts_key(attempt.slot_id), attempt_id)
            return attempt

        return await self.transaction([attempt_key], body)

    async def get(self, attempt_id: str) -> Optional[DispenseLog]:
        data = await self.get_hash(self.key(attempt_id))
        return DispenseLog.from_hash(data) if data else None

    async def _load(self, attempt_ids: list[str]) -> list[DispenseLog]:
        attempts = []
        for attempt_id in attempt_ids:
            attempt = await self.get(attempt_id)
            if attempt is not None:
                attempts.append(attempt)
        return attempts

    async def list_for_order(self, order_id: str) -> list[DispenseLog]:
        return await self._load(await self.get_list(self.order_key(order_id)))

    async def list_for_machine(
        self,
        machine_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DispenseLog]:
        ids = await self.get_list(self.machine_key(machine_id), offset, offset + limit - 1)
        return await self._load(ids)

    async def list_open(self) -> list[DispenseLog]:
        return await self._load(sorted(await self.get_set_members(self.OPEN_KEY)))

    async def count_for_machine(self, machine_id: str) -> int:
        try:
            return await self._redis.llen(self.machine_key(machine_id))
        except (RedisConnError, RedisTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e


__all__ = [
    "RedisStateRepository",
    "ProductRepository",
    "SlotRepository",
    "StockLogRepository",
    "MachineRepository",
    "OrderRepository",
    "DispenseLogRepository",
]
