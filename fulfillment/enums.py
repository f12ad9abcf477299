"""Enumerations for the fulfillment service."""

from enum import Enum


class PipelineStage(Enum):
    """Stages of one label fulfillment run, in execution order.

    A run moves strictly forward through these stages. Failures reported by
    the pipeline carry the stage they happened in; RECORD_UPDATING never
    fails a run (see orchestrator.run_fulfillment).
    """

    VALIDATED = "validated"
    RENDERING = "rendering"
    MERGING = "merging"
    UPLOADING = "uploading"
    RECORD_UPDATING = "record_updating"
    COMPLETED = "completed"


class MergeBackend(Enum):
    """Where label documents are concatenated."""

    REMOTE = "remote"
    LOCAL = "local"

    @classmethod
    def from_string(cls, value: str | None) -> "MergeBackend":
        """Convert string to MergeBackend.

        Parameters
        ----------
        value : str | None
            Backend name ('remote', 'local'), or None for default.

        Returns
        -------
        MergeBackend
            Corresponding MergeBackend enum, defaults to REMOTE if value is None.

        Raises
        ------
        ValueError
            If value is not a valid backend name.
        """
        if value is None:
            return cls.REMOTE

        value_lower = value.lower()
        for backend in cls:
            if backend.value == value_lower:
                return backend

        raise ValueError(
            f"Unknown merge backend: {value}. "
            f"Valid options: {', '.join(b.value for b in cls)}"
        )


class MergeTransport(Enum):
    """How documents are handed to the remote merge service.

    Attributes
    ----------
    BASE64 : str
        Each document is downloaded from the archive and posted inline as a
        base64 payload.
    URL : str
        Only fetchable download URLs are posted; the merge service retrieves
        the documents itself.
    """

    BASE64 = "base64"
    URL = "url"

    @classmethod
    def from_string(cls, value: str | None) -> "MergeTransport":
        """Convert string to MergeTransport, defaulting to BASE64 for None."""
        if value is None:
            return cls.BASE64

        value_lower = value.lower()
        for transport in cls:
            if transport.value == value_lower:
                return transport

        raise ValueError(
            f"Unknown merge transport: {value}. "
            f"Valid options: {', '.join(t.value for t in cls)}"
        )
