from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from loyalty.models import Base


class Database:
    """Process-wide connection pool and session factory.

    Created once at startup and passed to everything that talks to storage;
    `dispose()` closes the pool at shutdown.
    """

    def __init__(self, url: str, pool_size: int = 5):
        kwargs = {"pool_pre_ping": True}
        if make_url(url).get_backend_name() != "sqlite":
            kwargs.update(pool_size=pool_size, max_overflow=pool_size * 2)
        self.engine = create_engine(url, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def dispose(self) -> None:
        self.engine.dispose()
