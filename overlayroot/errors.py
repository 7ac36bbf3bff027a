"""Failure kinds recorded while assembling the overlay root."""


class OverlayRootError(RuntimeError):
    """Base class for every recorded failure kind."""


class DeviceUnresolved(OverlayRootError):
    """Neither the specifier nor its fallback named a device."""


class DeviceAbsent(OverlayRootError):
    """A specifier resolved to a path that never showed up."""


class MountFailure(OverlayRootError):
    """A mount, move or mkdir step returned non-zero."""


class PartitionMismatch(OverlayRootError):
    """Writable medium is not a single partition of the expected type."""


class FormatFailure(OverlayRootError):
    """Repartitioning or formatting the writable medium failed."""


class RelocationFailure(OverlayRootError):
    """Moving /ro or /rw failed after the root was pivoted."""
