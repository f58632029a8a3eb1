"""
Error types raised while taking a staking snapshot.

Every error is fatal for the run: the CLI reports it and exits non-zero.
"""


class SnapshotError(Exception):
    """Base class for all snapshot failures."""


class EndpointConnectionError(SnapshotError):
    """The query endpoint could not be reached within the connect timeout."""


class TransportError(SnapshotError):
    """A page fetch failed at the network level."""


class ProtocolError(SnapshotError):
    """The endpoint answered with an error status or a malformed response."""


class DataContractError(SnapshotError):
    """A delegation record broke the expected data contract."""


class StakeOverflowError(SnapshotError):
    """Accumulated stake no longer fits in an unsigned 128-bit amount."""


class OutputSinkError(SnapshotError):
    """The output file could not be created or written."""
