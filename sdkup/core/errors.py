"""Error taxonomy for the query and install pipelines."""


class SdkupError(Exception):
    """Base class for every failure reported by a pipeline."""


class CatalogLoadError(SdkupError):
    """Repository index or installed registry could not be loaded."""


class DownloadError(SdkupError):
    """A package archive could not be fetched or verified."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to download {path}: {reason}")


class PackageNotFoundError(SdkupError):
    """A requested update is missing from the remote catalog."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Failed to find package {path}")


class DependencyResolutionError(SdkupError):
    """No complete, ordered set of packages satisfies the request."""


class InstallStepFailedError(SdkupError):
    """Prepare or commit failed for one package of an install run."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        message = f"Failed to install {path}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class OperationCancelled(Exception):
    """Raised at a suspension point once cancellation was requested.

    Not an SdkupError: a cancelled pipeline ends in its own terminal state
    and is never reported as a failure.
    """
