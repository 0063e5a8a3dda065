from sqlmodel import create_engine, SQLModel, Session

from partnermatch.core.config import settings

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {"connect_timeout": 10}

engine = create_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,  # Verify connections before use (serverless Postgres drops idle ones)
    connect_args=connect_args,
)


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables():
    import partnermatch.models  # noqa: F401  (registers table metadata)

    SQLModel.metadata.create_all(engine)
