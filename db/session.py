from sqlalchemy.engine import Engine
from sqlmodel import create_engine


# The Wire / Link That Lets Us Pass Data from App -> db
def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Build an engine for the time entry store or the local offline queue."""
    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are opened from worker threads (asyncio.to_thread); the
        # busy timeout lets concurrent writers wait instead of failing.
        connect_args = {"check_same_thread": False, "timeout": 30}
    # Note: echo=True will log all SQL statements, keep it False in production
    return create_engine(url, echo=echo, connect_args=connect_args)
