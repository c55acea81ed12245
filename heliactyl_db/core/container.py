"""Dependency injection container for database handles."""

from dependency_injector import containers, providers

from heliactyl_db.core.cache import ReadCache
from heliactyl_db.core.config import Settings
from heliactyl_db.core.database import KeyValueDatabase
from heliactyl_db.core.logging import configure_logging


class Container(containers.DeclarativeContainer):
    """Wires settings, the read cache and the database handle."""

    settings = providers.Singleton(
        Settings,
    )

    # Started by init_resources(); attaches the console and file sinks
    logging = providers.Resource(
        configure_logging,
        settings=settings,
    )

    # Injected into the handle rather than living as a module-level instance
    read_cache = providers.Singleton(
        ReadCache,
        max_entries=settings.provided.cache_max_entries,
        default_ttl=settings.provided.cache_ttl,
    )

    database = providers.Singleton(
        KeyValueDatabase,
        settings.provided.database_url,
        settings=settings,
        cache=read_cache,
    )
