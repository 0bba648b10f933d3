from labslots.infrastructure.timeslots.in_memory import InMemorySlotRepository
from labslots.infrastructure.timeslots.postgres import PostgresSlotRepository

__all__ = ["InMemorySlotRepository", "PostgresSlotRepository"]
