from sqlalchemy import Engine, create_engine, event
from sqlmodel import Session, SQLModel

from shelfscan.internal.env_settings import Settings
from shelfscan.util.log import logger


def build_engine(settings: Settings | None = None) -> Engine:
    settings = settings or Settings()
    db = settings.db
    if db.use_postgres:
        engine = create_engine(
            f"postgresql://{db.postgres_user}:{db.postgres_password}@{db.postgres_host}:{db.postgres_port}/{db.postgres_db}?sslmode={db.postgres_ssl_mode}",
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_pre_ping=db.pool_pre_ping,
        )
    else:
        sqlite_path = settings.get_sqlite_path()
        engine = create_engine(
            f"sqlite+pysqlite:///{sqlite_path}",
            connect_args={"check_same_thread": False},
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_pre_ping=db.pool_pre_ping,
        )

    logger.info(
        "Database connection pool configured",
        database_type="PostgreSQL" if db.use_postgres else "SQLite",
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_pre_ping=db.pool_pre_ping,
    )

    @event.listens_for(engine, "connect")
    def receive_connect(dbapi_conn, connection_record):
        """Log when a new connection is established"""
        if settings.app.debug:
            logger.debug("Database connection established")

    return engine


def create_db_and_tables(engine: Engine) -> None:
    # Table definitions register on import
    import shelfscan.internal.models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session(engine: Engine):
    with Session(engine) as session:
        yield session
