from tender_review.repositories.job_events import InMemoryJobEventsRepository, PostgresJobEventsRepository
from tender_review.repositories.job_results import InMemoryJobResultsRepository, PostgresJobResultsRepository
from tender_review.repositories.jobs import InMemoryJobsRepository, PostgresJobsRepository

__all__ = [
    "InMemoryJobEventsRepository",
    "PostgresJobEventsRepository",
    "InMemoryJobResultsRepository",
    "PostgresJobResultsRepository",
    "InMemoryJobsRepository",
    "PostgresJobsRepository",
]
