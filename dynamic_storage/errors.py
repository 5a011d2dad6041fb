"""Error taxonomy for the storage sizing engine.

Every error here is recovered inside the evaluation of a single volume group;
none of them is allowed to abort a reconciliation pass or the process.
"""


class StorageSizingError(Exception):
    """Base class for storage sizing errors."""
    pass


class ProbeUnavailable(StorageSizingError):
    """Raised when filesystem statistics are missing, stale or unreadable.

    Callers treat this as "no decision this cycle", never as zero usage.
    """

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        message = f"Disk statistics unavailable for {path}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class WALHealthUnknown(StorageSizingError):
    """Raised when the archiver or replication slot state cannot be read."""
    pass


class ConfigurationInvalid(StorageSizingError):
    """Raised when a storage sizing policy cannot be interpreted."""

    def __init__(self, field: str, value, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class PatchConflict(StorageSizingError):
    """Raised when a PVC was modified concurrently and the patch was rejected."""

    def __init__(self, pvc_name: str, reason: str = ""):
        self.pvc_name = pvc_name
        super().__init__(f"Conflict while patching PVC {pvc_name}: {reason}".rstrip(": "))


class ResizeRequestFailed(StorageSizingError):
    """Raised when the API server refuses a resize request for another reason."""

    def __init__(self, pvc_name: str, reason: str = ""):
        self.pvc_name = pvc_name
        super().__init__(f"Failed to resize PVC {pvc_name}: {reason}".rstrip(": "))


class ReconciliationSuperseded(StorageSizingError):
    """Raised when the running pass is cancelled before it finishes."""
    pass
