from records_engine.backends.base import ResourceBackend
from records_engine.backends.http import HttpResourceBackend
from records_engine.backends.postgres import PostgresResourceBackend
from records_engine.settings import Settings


def create_backend(settings: Settings) -> ResourceBackend:
    if settings.resource_backend == "postgres":
        return PostgresResourceBackend(settings)
    return HttpResourceBackend(settings)


__all__ = [
    "HttpResourceBackend",
    "PostgresResourceBackend",
    "ResourceBackend",
    "create_backend",
]
