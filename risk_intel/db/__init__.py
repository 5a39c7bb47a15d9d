from risk_intel.db.base import Base
from risk_intel.db.config import DBSettings, get_db_settings
from risk_intel.db.engine import make_engine

__all__ = [
    "Base",
    "DBSettings",
    "get_db_settings",
    "make_engine",
]
