"""
Error taxonomy and failure reporting for the transcription pipeline.

Every failure that can leave a component is one of the exceptions below. Failures
are contained to the owning job: callers catch them, log them with the job id,
source kind and stage, and record an ErrorDetails on the job row.
"""

import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Where in the pipeline a failure originated."""
    ADMISSION = "admission"
    ACQUISITION = "acquisition"
    PROVIDER = "provider"
    REALIGNMENT = "realignment"
    STATE = "state"
    DATABASE = "database"
    NETWORK = "network"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    category = ErrorCategory.UNKNOWN
    recoverable = False


class AdmissionDenied(PipelineError):
    """Request refused by admission control. Recoverable by waiting or upgrading."""
    category = ErrorCategory.ADMISSION
    recoverable = True

    def __init__(
        self,
        reason: str,
        retry_after: Optional[float] = None,
        remaining: Optional[Dict[str, float]] = None,
    ):
        super().__init__(reason)
        self.reason = reason
        self.retry_after = retry_after
        self.remaining = remaining or {}


class RateLimited(AdmissionDenied):
    """Sliding window or daily cap exhausted."""
    pass


class QuotaExceeded(AdmissionDenied):
    """Tier ceiling for requests or minutes reached."""
    pass


class IdentityBlocked(AdmissionDenied):
    """Identity blocked by the abuse detector or bot verification."""
    pass


class UnsupportedJobType(PipelineError):
    """Job type this deployment does not process."""
    category = ErrorCategory.VALIDATION

    def __init__(self, job_type: str):
        super().__init__(f"Job type '{job_type}' is not supported; only transcription jobs are processed")
        self.job_type = job_type


class AcquisitionFailed(PipelineError):
    """Source could not be resolved or every clipping stage failed."""
    category = ErrorCategory.ACQUISITION

    def __init__(self, message: str, source_ref: str = "", attempts: Optional[List[str]] = None):
        super().__init__(message)
        self.source_ref = source_ref
        self.attempts = attempts or []


class ProviderFailure(PipelineError):
    """A single transcription provider failed."""
    category = ErrorCategory.PROVIDER
    recoverable = True

    def __init__(self, provider_id: str, message: str):
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id


class ProviderTimeout(ProviderFailure):
    """A provider exceeded its time budget."""
    pass


class RealignmentFailure(PipelineError):
    """Timestamps could not be re-derived after refinement."""
    category = ErrorCategory.REALIGNMENT
    recoverable = True


class InvalidTransitionError(PipelineError):
    """Job state change that is not an allowed edge."""
    category = ErrorCategory.STATE


class JobNotFoundError(PipelineError):
    """Unknown job id."""
    category = ErrorCategory.STATE


class QueueFullError(PipelineError):
    """Pending queue is at capacity."""
    category = ErrorCategory.ADMISSION
    recoverable = True


@dataclass
class ErrorDetails:
    """Detailed error information for persistence and diagnosis."""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    exception_type: str
    context: Dict[str, Any] = field(default_factory=dict)
    traceback: str = ""
    recoverable: bool = False
    error_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'error_id': self.error_id,
            'category': self.category.value,
            'severity': self.severity.value,
            'message': self.message,
            'exception_type': self.exception_type,
            'context': self.context,
            'traceback': self.traceback,
            'timestamp': self.timestamp.isoformat(),
            'recoverable': self.recoverable,
        }


def classify_error(error: Exception) -> ErrorCategory:
    """Map an exception to its error category."""
    if isinstance(error, PipelineError):
        return error.category
    name = type(error).__name__.lower()
    if "timeout" in name or "connect" in name or "http" in name:
        return ErrorCategory.NETWORK
    if "sql" in name or "database" in name:
        return ErrorCategory.DATABASE
    if "validation" in name or isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


def build_error_details(error: Exception, context: Optional[Dict[str, Any]] = None) -> ErrorDetails:
    """
    Build an ErrorDetails record for an exception.

    Args:
        error: The exception to describe
        context: Extra context such as job id and stage

    Returns:
        Populated ErrorDetails
    """
    category = classify_error(error)
    recoverable = getattr(error, "recoverable", False)
    if category in (ErrorCategory.ACQUISITION, ErrorCategory.DATABASE):
        severity = ErrorSeverity.HIGH
    elif recoverable:
        severity = ErrorSeverity.LOW
    else:
        severity = ErrorSeverity.MEDIUM
    return ErrorDetails(
        category=category,
        severity=severity,
        message=str(error),
        exception_type=type(error).__name__,
        context=context or {},
        traceback="".join(traceback.format_exception(type(error), error, error.__traceback__)),
        recoverable=recoverable,
    )


def log_pipeline_error(
    error: Exception,
    job_id: Optional[str],
    source_kind: Optional[str],
    stage: str,
    level: int = logging.WARNING,
    **extra: Any,
) -> ErrorDetails:
    """
    Log a failure with the job id, source kind and stage attached.

    Args:
        error: The failure
        job_id: Owning job, if any
        source_kind: Kind of media source being processed
        stage: Pipeline stage name
        level: Logging level
        **extra: Additional context fields

    Returns:
        The ErrorDetails that was logged
    """
    context = {"job_id": job_id, "source_kind": source_kind, "stage": stage, **extra}
    details = build_error_details(error, context)
    context_parts = [f"{k}={v}" for k, v in context.items() if v is not None]
    logger.log(
        level,
        f"{details.exception_type} in {stage}: {details.message} | Context: {', '.join(context_parts)}",
    )
    return details
