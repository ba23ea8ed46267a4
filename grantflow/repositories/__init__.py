from grantflow.repositories.allocators import InMemoryAllocatorsRepository, PostgresAllocatorsRepository
from grantflow.repositories.applications import (
    InMemoryApplicationsRepository,
    PostgresApplicationsRepository,
    application_row,
)

__all__ = [
    "InMemoryAllocatorsRepository",
    "PostgresAllocatorsRepository",
    "InMemoryApplicationsRepository",
    "PostgresApplicationsRepository",
    "application_row",
]
