from __future__ import annotations


class ArchiveError(Exception):
    """Base class for archive catalog errors."""


# Catalog
class UnsupportedSchemaError(ArchiveError):
    pass


class DiscSetError(ArchiveError):
    pass


# Validation (raised before anything destructive happens)
class InvalidDiscIdError(ArchiveError, ValueError):
    pass


class StagingError(ArchiveError):
    pass


class CapacityExceededError(ArchiveError):
    def __init__(self, total_size: int, capacity: int):
        super().__init__(
            f"total size {total_size} bytes exceeds disc capacity {capacity} bytes"
        )
        self.total_size = total_size
        self.capacity = capacity


# Verification
class NotAnArchiveError(ArchiveError):
    pass


# External programs
class ExternalToolError(ArchiveError):
    def __init__(self, program: str, exit_code: int | None, details: str, guidance: str | None = None):
        msg = f"{program} failed rc={exit_code}"
        if guidance:
            msg += f": {guidance}"
        if details:
            msg += f"\n{details}"
        super().__init__(msg)
        self.program = program
        self.exit_code = exit_code
        self.details = details
        self.guidance = guidance


# State machines
class InvalidTransitionError(ArchiveError):
    pass


class ActiveSessionExistsError(ArchiveError):
    pass


# Configuration
class ConfigError(ArchiveError):
    pass
