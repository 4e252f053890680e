"""Exceptions for effortless-deploy."""

from typing import Any

from botocore.exceptions import ClientError

# ---------------------------------------------------------------------------
# Base Exception
# ---------------------------------------------------------------------------


class EffortlessError(Exception):
    """
    Base exception for all effortless-deploy errors.

    All exceptions raised by this library inherit from this class,
    allowing callers to catch all library-specific errors with a single
    except clause.
    """

    pass


# ---------------------------------------------------------------------------
# Category Exceptions
# ---------------------------------------------------------------------------


class InfrastructureError(EffortlessError):
    """
    Base exception for provider-side failures.

    Raised when a cloud API call fails in a way the reconcilers cannot
    absorb (anything other than not-found, already-exists, or a transient
    conflict that resolved within the retry budget).
    """

    pass


class DeploymentError(EffortlessError):
    """
    Base exception for failures scoped to a single handler deployment.
    """

    def __init__(self, handler: str, kind: str, reason: str) -> None:
        self.handler = handler
        self.kind = kind
        self.reason = reason
        super().__init__(f"Deployment of {kind} handler '{handler}' failed: {reason}")


class BuildCommandError(EffortlessError):
    """Raised when a site build command exits with a non-zero status."""

    def __init__(self, command: str, returncode: int, output: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        msg = f"Build command '{command}' exited with status {returncode}"
        if output:
            msg += f": {output}"
        super().__init__(msg)


class ValidationError(EffortlessError):
    """
    Raised when a desired spec or identifier is malformed.

    Validation errors are never retried.
    """

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}: {value!r}: {reason}")


# ---------------------------------------------------------------------------
# Infrastructure Exceptions
# ---------------------------------------------------------------------------


class ResourceNotFoundError(InfrastructureError):
    """Raised when a resource required by a later step does not exist."""

    def __init__(self, resource_kind: str, name: str) -> None:
        self.resource_kind = resource_kind
        self.name = name
        super().__init__(f"{resource_kind} '{name}' not found")


class ResourceConflictError(InfrastructureError):
    """
    Raised when a resource stays busy with a previous mutation.

    The provider reported a conflict or in-progress state and the bounded
    retry budget ran out before the resource settled.
    """

    def __init__(self, resource_kind: str, name: str, detail: str = "") -> None:
        self.resource_kind = resource_kind
        self.name = name
        msg = f"{resource_kind} '{name}' is still being modified"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class WaitTimeoutError(InfrastructureError):
    """Raised when polling for a steady state exceeds its attempt budget."""

    def __init__(self, description: str, attempts: int, last_state: str | None = None) -> None:
        self.description = description
        self.attempts = attempts
        self.last_state = last_state
        msg = f"Timed out waiting for {description} after {attempts} attempts"
        if last_state:
            msg += f" (last state: {last_state})"
        super().__init__(msg)


class PermissionDeniedError(InfrastructureError):
    """Raised when the caller lacks IAM permission for an operation."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"Permission denied for {operation}: {message}")


class QuotaExceededError(InfrastructureError):
    """Raised when an account quota or API rate limit blocks an operation."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"Quota exceeded for {operation}: {message}")


# ---------------------------------------------------------------------------
# ClientError classification
# ---------------------------------------------------------------------------

NOT_FOUND_CODES = frozenset(
    {
        "ResourceNotFoundException",
        "NoSuchEntity",
        "NoSuchEntityException",
        "NotFoundException",
        "NoSuchBucket",
        "NotFound",
        "404",
        "NoSuchDistribution",
        "NoSuchFunctionExists",
        "NoSuchOriginAccessControl",
        "NoSuchTagSet",
        "NoSuchBucketPolicy",
        "AWS.SimpleQueueService.NonExistentQueue",
        "QueueDoesNotExist",
    }
)

ALREADY_EXISTS_CODES = frozenset(
    {
        "ResourceConflictException",
        "EntityAlreadyExists",
        "ResourceInUseException",
        "BucketAlreadyOwnedByYou",
        "AlreadyExistsException",
        "ConflictException",
        "QueueAlreadyExists",
        "FunctionAlreadyExists",
        "OriginAccessControlAlreadyExists",
    }
)

CONFLICT_CODES = frozenset(
    {
        "ResourceConflictException",
        "ResourceInUseException",
        "TooManyUpdates",
        "PreconditionFailed",
        "DistributionNotDisabled",
        "OperationAborted",
        "ConcurrentModification",
        "ConcurrentModificationException",
    }
)

PERMISSION_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
    }
)

QUOTA_CODES = frozenset(
    {
        "LimitExceeded",
        "LimitExceededException",
        "TooManyRequestsException",
        "ThrottlingException",
        "Throttling",
        "ServiceQuotaExceededException",
        "CodeStorageExceededException",
        "TooManyDistributions",
    }
)

VALIDATION_CODES = frozenset(
    {
        "ValidationException",
        "ValidationError",
        "InvalidParameterValueException",
        "InvalidParameterValue",
        "MalformedPolicyDocument",
        "InvalidArgument",
        "BadRequestException",
    }
)


def error_code(error: ClientError) -> str:
    """Return the provider error code of a ClientError ("" if missing)."""
    return str(error.response.get("Error", {}).get("Code", ""))


def error_message(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Message", error))


def is_not_found(error: ClientError) -> bool:
    return error_code(error) in NOT_FOUND_CODES


def is_already_exists(error: ClientError) -> bool:
    return error_code(error) in ALREADY_EXISTS_CODES


def is_conflict(error: ClientError) -> bool:
    return error_code(error) in CONFLICT_CODES


def classify_error(error: ClientError, operation: str = "") -> EffortlessError:
    """
    Map a botocore ClientError onto the library's error taxonomy.

    Args:
        error: The raw ClientError from an aioboto3 call
        operation: Optional operation name included in the message

    Returns:
        The matching EffortlessError subclass instance. Unknown codes are
        wrapped in a generic InfrastructureError.
    """
    code = error_code(error)
    message = error_message(error)
    operation = operation or error.operation_name or "unknown"
    if code in PERMISSION_CODES:
        return PermissionDeniedError(operation, message)
    if code in QUOTA_CODES:
        return QuotaExceededError(operation, message)
    if code in VALIDATION_CODES:
        return ValidationError(operation, code, message)
    if code in CONFLICT_CODES:
        return ResourceConflictError(operation, "", message)
    return InfrastructureError(f"{operation} failed ({code}): {message}")
