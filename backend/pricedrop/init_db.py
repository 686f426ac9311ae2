from pricedrop.models_sqlalchemy import Base, engine
from pricedrop.models_sqlalchemy import auction  # noqa: F401  (registers tables)
from pricedrop.utils.logger import logger


def init_db(bind=None) -> None:
    """Create missing tables for the auction models."""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured: %s", ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    init_db()
