"""Exception hierarchy.

Every error raised on purpose by this package derives from
:class:`PipelineError`, so callers can catch the whole family at once.

Retry policy by error kind:
    - :class:`InsufficientInputError`, :class:`InjectionError` and its
      subclasses are data problems. They are never retried.
    - :class:`DeploymentInProgressError` asks the caller to back off.
    - :class:`TransientEngineError` is retried inside the orchestrator only;
      callers see :class:`DeploymentFailedError` once retries are exhausted.
"""

from typing import Iterable, Optional


class PipelineError(RuntimeError):
    """Base class for composition and deployment errors."""


class InsufficientInputError(PipelineError):
    """Raised when scoring or building is asked to work on zero categories."""


class CategoryNotFoundError(PipelineError):
    """Raised when the catalog has no definition for a category id."""

    def __init__(self, category_id: str) -> None:
        super().__init__(f"Category not found in catalog: {category_id}")
        self.category_id = category_id


class ProfileNotFoundError(PipelineError):
    """Raised when no business profile exists for a profile id."""

    def __init__(self, profile_id: str) -> None:
        super().__init__(f"Business profile not found: {profile_id}")
        self.profile_id = profile_id


class ProfileInactiveError(PipelineError):
    """Raised when composing for a soft-deactivated profile."""

    def __init__(self, profile_id: str) -> None:
        super().__init__(f"Business profile is deactivated: {profile_id}")
        self.profile_id = profile_id


class InjectionError(PipelineError):
    """Base class for errors found while injecting runtime data."""


class UnresolvedPlaceholderError(InjectionError):
    """Raised when a placeholder token has no binding.

    Args:
        tokens: Every unresolved token, e.g. ``["{{fact:currency}}"]``.
    """

    def __init__(self, tokens: Iterable[str]) -> None:
        self.tokens = sorted(set(tokens))
        super().__init__(f"Unresolved placeholder(s): {', '.join(self.tokens)}")


class LabelBindingMismatchError(InjectionError):
    """Raised when the graph references labels the tenant does not have.

    ``offending`` lists every problem at once: intent keys with no tenant
    label, followed by label ids missing from the provisioned set.
    """

    def __init__(
        self,
        missing_intents: Iterable[str] = (),
        unknown_label_ids: Iterable[str] = (),
    ) -> None:
        self.missing_intents = sorted(set(missing_intents))
        self.unknown_label_ids = sorted(set(unknown_label_ids))
        self.offending = self.missing_intents + self.unknown_label_ids
        super().__init__(
            f"Label binding mismatch for: {', '.join(self.offending)}"
        )


class DeploymentInProgressError(PipelineError):
    """Raised when a deploy or rollback is already running for the profile."""

    def __init__(self, profile_id: str) -> None:
        super().__init__(
            f"A deployment is already in progress for profile {profile_id}; retry later"
        )
        self.profile_id = profile_id


class DeploymentFailedError(PipelineError):
    """Raised when pushing a graph to the execution engine failed.

    Args:
        message: Human-readable failure summary.
        cause: Last underlying exception, if any.
        retryable: Whether the underlying failure was transient.
        attempts: Number of engine calls made for the failing operation.
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        retryable: bool = False,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.retryable = retryable
        self.attempts = attempts


class DeploymentCancelledError(DeploymentFailedError):
    """Raised when the caller's deadline or cancellation signal fired."""


class RollbackUnavailableError(PipelineError):
    """Raised when there is no failed attempt or no known-good graph to restore."""


class EngineError(PipelineError):
    """Base class for execution engine API errors.

    Args:
        message: Error summary.
        status_code: HTTP status code when the engine answered.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientEngineError(EngineError):
    """Timeout, connection failure, 5xx or 429. Safe to retry."""


class EngineRequestError(EngineError):
    """Non-transient engine rejection (4xx other than 429, invalid payload)."""


class LedgerError(PipelineError):
    """Raised when a ledger write would break the append-only history."""
