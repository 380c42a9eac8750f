"""
Base class for the job pipeline stage workers.

A stage worker runs one step of a job (transcription today) inside a common
envelope: input checks, timing, logging with job context, and a StageOutcome
that carries either the stage data or the classified failure. Stage errors are
returned, not raised, so the job worker decides how the job transitions.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from core.error_handling import ErrorCategory, log_pipeline_error


class WorkerStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StageOutcome:
    """Result of one stage run for one job."""
    status: WorkerStatus
    worker: str
    stage: str
    job_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_category: Optional[str] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == WorkerStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "status": self.status.value,
            "worker": self.worker,
            "stage": self.stage,
            "job_id": self.job_id,
            "elapsed": round(self.elapsed, 3),
        }
        if self.error is not None:
            result["error"] = self.error
            result["error_category"] = self.error_category
        return result


class BaseWorker(ABC):
    """
    Abstract stage worker.

    Attributes:
        name: Worker name, used for the ``worker.<name>`` logger
        stage: Job stage this worker runs in, recorded with failures
    """

    def __init__(self, name: str, stage: str, log_level: str = "INFO") -> None:
        self.name = name
        self.stage = stage
        self.logger = self._setup_logger(log_level)
        self.runs = 0
        self.failures = 0

    def _setup_logger(self, log_level: str) -> logging.Logger:
        logger = logging.getLogger(f"worker.{self.name}")
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
            logger.addHandler(handler)
            logger.propagate = False
        logger.setLevel(getattr(logging, log_level.upper()))
        return logger

    def log_with_context(
        self,
        message: str,
        level: str = "INFO",
        extra_context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log a message prefixed with the worker name.

        Args:
            message: Log message
            level: Log level name
            extra_context: Appended as ``| Context: k=v``
        """
        context_msg = f"[{self.name}] {message}"
        if extra_context:
            context_msg += " | Context: " + ", ".join(f"{k}={v}" for k, v in extra_context.items())
        getattr(self.logger, level.lower())(context_msg)

    async def run(self, input_data: Dict[str, Any]) -> StageOutcome:
        """
        Validate, execute and time one stage run.

        Args:
            input_data: Stage input; ``job_id`` is expected in every payload

        Returns:
            StageOutcome with SUCCESS and the stage data, or FAILED with the
            error message and category
        """
        job_id = input_data.get("job_id")
        started = time.monotonic()
        self.runs += 1

        if not self.validate_input(input_data):
            self.failures += 1
            return StageOutcome(
                WorkerStatus.FAILED, self.name, self.stage, job_id,
                error="Input validation failed", error_category=ErrorCategory.VALIDATION.value,
                elapsed=time.monotonic() - started,
            )

        try:
            data = await self.execute(input_data)
        except Exception as e:
            self.failures += 1
            category = self.handle_error(e, input_data)
            return StageOutcome(
                WorkerStatus.FAILED, self.name, self.stage, job_id,
                error=str(e), error_category=category,
                elapsed=time.monotonic() - started,
            )

        elapsed = time.monotonic() - started
        self.log_with_context(f"Stage finished in {elapsed:.2f}s", level="DEBUG", extra_context={"job_id": job_id})
        return StageOutcome(WorkerStatus.SUCCESS, self.name, self.stage, job_id, data=data, elapsed=elapsed)

    def handle_error(self, error: Exception, input_data: Dict[str, Any]) -> str:
        """
        Log a stage failure and classify it.

        Returns:
            Error category value stored on the job row
        """
        details = log_pipeline_error(error, input_data.get("job_id"), self.source_kind(input_data), self.stage)
        return details.category.value

    def source_kind(self, input_data: Dict[str, Any]) -> Optional[str]:
        return None

    def get_stats(self) -> Dict[str, Any]:
        return {"worker": self.name, "stage": self.stage, "runs": self.runs, "failures": self.failures}

    @abstractmethod
    def validate_input(self, input_data: Dict[str, Any]) -> bool:
        """Check the stage payload before execution."""

    @abstractmethod
    async def execute(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run the stage.

        Returns:
            Stage data handed back to the job worker

        Raises:
            PipelineError: On stage failure
        """
