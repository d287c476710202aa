"""
Error Taxonomy

Exceptions raised by the access-control engine.

Reads and checks fail closed: anything raised inside a permission check is
converted to a deny by safe_check() and never escapes the policy boundary.
Writes (facet assignment, revocation, manager reassignment) propagate these
errors so the caller sees the rejection.
"""


class AccessControlError(Exception):
    """Base exception for access-control errors."""
    pass


class ValidationError(AccessControlError):
    """Malformed input, e.g. a facet identifier that cannot be parsed."""
    pass


class NotFoundError(AccessControlError):
    """Referenced facet definition, assignment or entity does not exist."""
    pass


class HierarchyCycleError(AccessControlError):
    """Manager reassignment would create a cycle in the reporting graph."""

    def __init__(self, subject_id: str, proposed_manager_id: str):
        self.subject_id = subject_id
        self.proposed_manager_id = proposed_manager_id
        super().__init__(
            f"Setting line manager of {subject_id} to {proposed_manager_id} "
            f"would create a reporting cycle"
        )


class InternalError(AccessControlError):
    """Backing-store or transport failure."""
    pass
