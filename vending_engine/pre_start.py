"""
Seed a demo machine with products and slots.

Run once against an empty Redis before starting the engine locally.
"""

import uuid

from redis import Redis

from vending_engine.configs import MACHINE_ID, REDIS_DB, REDIS_HOST, REDIS_PORT
from vending_engine.application.stock_ledger import PROVISION_ACTOR, PROVISION_REASON
from vending_engine.core.models import Machine, Product, Slot, StockLogEntry
from vending_engine.core.value_objects import StockChangeType, utc_now
from vending_engine.infrastructure.redis_repository import (
    MachineRepository,
    ProductRepository,
    SlotRepository,
    StockLogRepository,
)

PRODUCTS = [
    Product(id=1, name="Paracetamol 500mg", price=12000),
    Product(id=2, name="Vitamin C 1000mg", price=25000),
    Product(id=3, name="Hand Sanitizer 60ml", price=18000),
    Product(id=4, name="Face Mask (5 pcs)", price=10000),
]

SLOTS = [
    Slot(id=1, machine_id=MACHINE_ID, slot_number=1, product_id=1, current_stock=8, capacity=10),
    Slot(id=2, machine_id=MACHINE_ID, slot_number=2, product_id=2, current_stock=5, capacity=10),
    Slot(id=3, machine_id=MACHINE_ID, slot_number=3, product_id=3, current_stock=10, capacity=10,
         price_override=17000),
    Slot(id=4, machine_id=MACHINE_ID, slot_number=4, product_id=4, current_stock=2, capacity=10,
         motor_duration_ms=2000),
]


redis = Redis(host=REDIS_HOST, port=REDIS_PORT, db=REDIS_DB, decode_responses=True)

for product in PRODUCTS:
    redis.hset(ProductRepository.key(product.id), mapping=product.to_hash())

for slot in SLOTS:
    redis.hset(SlotRepository.key(slot.id), mapping=slot.to_hash())
    redis.hset(SlotRepository.index_key(slot.machine_id), str(slot.slot_number), str(slot.id))
    entry = StockLogEntry(
        id=uuid.uuid4().hex,
        machine_id=slot.machine_id,
        slot_id=slot.id,
        change_type=StockChangeType.AUDIT,
        quantity_before=0,
        quantity_after=slot.current_stock,
        reason=PROVISION_REASON,
        performed_by=PROVISION_ACTOR,
        created_at=utc_now(),
    )
    redis.rpush(StockLogRepository.slot_key(slot.id), entry.to_json())
    redis.lpush(StockLogRepository.machine_key(slot.machine_id), entry.to_json())

redis.hset(MachineRepository.key(MACHINE_ID), mapping=Machine(id=MACHINE_ID).to_hash())
redis.sadd(MachineRepository.INDEX_KEY, MACHINE_ID)
