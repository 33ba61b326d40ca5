from src.db.database import async_session_maker, engine, get_db, init_db
from src.db.models import Base

__all__ = ["Base", "async_session_maker", "engine", "get_db", "init_db"]
