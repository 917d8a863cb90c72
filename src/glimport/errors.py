"""Custom exception hierarchy for glimport."""


class GlimportError(Exception):
    """Base exception for all glimport errors.

    ``stage`` is set to the failing stage name when the error escapes a
    pipeline stage.
    """

    stage: str | None = None


class FormatError(GlimportError):
    """Raised when a container does not decode."""


class BadMagicError(FormatError):
    """Raised when the container magic tag is not ``glTF``."""


class UnsupportedVersionError(FormatError):
    """Raised when the container version is not 2."""


class TruncatedChunkError(FormatError):
    """Raised when a header or chunk ends before its declared length."""


class ParseError(GlimportError):
    """Raised when the JSON document is invalid or fails schema deserialization."""


class ReferenceError(GlimportError):  # noqa: A001
    """Raised when a record references an index outside its target section."""


class RecordError(GlimportError):
    """Raised when a record is malformed (bad ranges, cycles, count mismatches)."""


class FetchError(GlimportError):
    """Raised when a remote or sibling resource cannot be retrieved."""


class UnsupportedFeatureError(GlimportError):
    """Raised for recognized-but-unhandled record shapes or required extensions."""


class SettingsError(GlimportError):
    """Raised when an import settings file cannot be loaded."""


class ValidationError(GlimportError):
    """Raised when a coded warning is promoted to an error by policy."""


class PipelineError(GlimportError):
    """Raised when a stage graph is built incorrectly."""


class StageError(PipelineError):
    """Raised when a stage fails with an unexpected (non-glimport) exception."""


class PipelineCancelled(PipelineError):
    """Raised when a cancelled run reaches its next stage boundary."""
