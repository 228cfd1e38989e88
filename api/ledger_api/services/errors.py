class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class HashCollisionError(RepositoryError):
    """Two different payloads produced the same content hash.

    Never resolved automatically: the chain is left untouched and the
    offending ingestion needs a manual audit.
    """

    def __init__(self, *, employee_id: str, endpoint: str, content_hash: str, version_id: str) -> None:
        super().__init__(
            f"content hash collision for employee={employee_id} endpoint={endpoint} "
            f"hash={content_hash} version={version_id}"
        )
        self.employee_id = employee_id
        self.endpoint = endpoint
        self.content_hash = content_hash
        self.version_id = version_id


class ChainIntegrityError(RepositoryConflictError):
    """Raised when a supersession targets a version that is no longer latest."""

    def __init__(self, *, employee_id: str, endpoint: str, expected_latest_id: str | None) -> None:
        super().__init__(
            f"stale latest pointer for employee={employee_id} endpoint={endpoint} "
            f"expected={expected_latest_id}"
        )
        self.employee_id = employee_id
        self.endpoint = endpoint
        self.expected_latest_id = expected_latest_id
