"""Service error hierarchy for the image pipeline.

- ServiceError: Base for all service errors
- NotFoundError: Referenced catalog record is missing (fatal for the job, never retried)
- ImagePipelineError: Failure scoped to one unique work unit, retried per slot up to the cap
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class NotFoundError(ServiceError):
    """Referenced print record does not exist."""

    pass


class ImagePipelineError(ServiceError):
    """Base exception for work-unit failures.

    Recorded as errorMessage on every slot of the failed unit.
    """

    pass


class FetchError(ImagePipelineError):
    """Network error, timeout or non-2xx response while downloading the source image."""

    pass


class DecodeError(ImagePipelineError):
    """Downloaded payload is not a supported raster image."""

    pass


class EncodeError(ImagePipelineError):
    """Variant encoding or placeholder hashing failed."""

    pass


class StorageError(ImagePipelineError):
    """Object storage rejected or failed a write."""

    pass
