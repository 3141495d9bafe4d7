from company_intel.repositories.error_logs import InMemoryErrorLogsRepository, PostgresErrorLogsRepository
from company_intel.repositories.outbox_events import InMemoryOutboxEventsRepository, PostgresOutboxEventsRepository
from company_intel.repositories.run_steps import InMemoryRunStepsRepository, PostgresRunStepsRepository
from company_intel.repositories.runs import InMemoryRunsRepository, PostgresRunsRepository
from company_intel.repositories.thread_memories import (
    InMemoryThreadMemoriesRepository,
    PostgresThreadMemoriesRepository,
)

__all__ = [
    "InMemoryErrorLogsRepository",
    "PostgresErrorLogsRepository",
    "InMemoryOutboxEventsRepository",
    "PostgresOutboxEventsRepository",
    "InMemoryRunStepsRepository",
    "PostgresRunStepsRepository",
    "InMemoryRunsRepository",
    "PostgresRunsRepository",
    "InMemoryThreadMemoriesRepository",
    "PostgresThreadMemoriesRepository",
]
