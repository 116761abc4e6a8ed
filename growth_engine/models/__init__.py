"""
Database models
"""
from growth_engine.models.base import Base, SessionLocal, engine, get_db, init_db
from growth_engine.models.raw import RawEvent
from growth_engine.models.staging import StgOrder, StgCustomer, StgSpend, StgTraffic, StgEmail

__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "get_db",
    "init_db",
    "RawEvent",
    "StgOrder",
    "StgCustomer",
    "StgSpend",
    "StgTraffic",
    "StgEmail",
]
