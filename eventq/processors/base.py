import logging
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Type

from ..jobs import JOB_TYPES, parse_job_type
from ..models import Job

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Any]


class Processor:
    """Dispatches the jobs of one queue on their type.

    Subclasses set `queue` and return a handler for every member of that
    queue's job-type enum from `handlers()`. A processor missing a handler
    fails at construction, not when the first such job arrives.
    """

    queue: str = ""

    def __init__(self):
        self.job_types: Type[Enum] = JOB_TYPES[self.queue]
        self._handlers: Mapping[Enum, Handler] = self.handlers()
        missing = [k.value for k in self.job_types if k not in self._handlers]
        if missing:
            raise TypeError(f"{type(self).__name__} has no handler for: {', '.join(missing)}")

    def handlers(self) -> Mapping[Enum, Handler]:
        raise NotImplementedError

    def process(self, job: Job) -> Any:
        kind = parse_job_type(self.queue, job.type)
        logger.info("Processing %s job [%s]: %s", self.queue, job.id, kind.value)
        try:
            result = self._handlers[kind](job.data)
        except Exception:
            logger.exception("%s job [%s] failed", self.queue.capitalize(), job.id)
            raise
        logger.info("%s job [%s] completed successfully", self.queue.capitalize(), job.id)
        return result
