from .session import SessionLocal, engine, get_db_session, init_db

__all__ = ["SessionLocal", "engine", "get_db_session", "init_db"]
