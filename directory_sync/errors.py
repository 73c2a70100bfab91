"""
Exceptions shared across the sync services.

Configuration problems live in directory_sync.config and protocol failures in
directory_sync.gateway, next to the code that raises them.
"""

from typing import List, Tuple


class DataIntegrityError(Exception):
    """An identifier or attribute we rely on is missing from a directory record."""
    pass


class ValidationError(Exception):
    """A caller-supplied entity is missing a field required for the operation."""
    pass


class MembershipSyncError(Exception):
    """
    One or more group membership writes failed during a reconciliation pass.

    The other groups in the pass were still processed; ``failures`` lists each
    failed group DN with the error it raised.
    """

    def __init__(self, failures: List[Tuple[str, Exception]]):
        self.failures = failures
        details = "; ".join(f"{dn}: {error}" for dn, error in failures)
        super().__init__(f"{len(failures)} group membership update(s) failed: {details}")
