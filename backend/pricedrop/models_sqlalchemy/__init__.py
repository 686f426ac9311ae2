from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from pricedrop.config import settings

# Use DATABASE_URL exactly as provided by settings so the scheduler, the API
# and init_db all talk to the same database.
DATABASE_URL = settings.DATABASE_URL

# Configure connection args based on database type
if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}
    engine = create_engine(
        DATABASE_URL,
        connect_args=connect_args,
        echo=settings.DEBUG,
    )
else:
    # PostgreSQL connection settings
    connect_args = {
        "connect_timeout": 10,
        "keepalives": 1,
        "keepalives_idle": 30,
        "keepalives_interval": 10,
        "keepalives_count": 5,
    }
    engine = create_engine(
        DATABASE_URL,
        connect_args=connect_args,
        echo=False,  # keep SQL logging off by default in production
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,
        pool_timeout=30,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
