"""AB Jail Worker Tasks."""

# Import all tasks to register them with Celery
from abjail_worker.tasks import maintenance  # noqa: F401
from abjail_worker.tasks import pipeline  # noqa: F401
