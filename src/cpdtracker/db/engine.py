"""SQLModel engine construction: schema creation plus pending migrations."""
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine


def open_engine(database_url: str) -> Engine:
    """
    Build an engine with the full schema in place.

    Tables missing from the database are created from the models, then
    run_migrations() upgrades any existing tables. Nothing should query the
    engine before this returns; a migration failure propagates and is fatal.
    """
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            # One shared connection, otherwise each session sees an empty DB
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)

    # Import all models so metadata is populated before create_all
    from cpdtracker.models.asset import Asset  # noqa
    from cpdtracker.models.subscription import Subscription  # noqa
    from cpdtracker.models.settings import AppSettings  # noqa
    from cpdtracker.models.sync import SyncLog, Tombstone  # noqa
    SQLModel.metadata.create_all(engine)

    from cpdtracker.db.migrations import run_migrations
    run_migrations(engine)
    return engine
