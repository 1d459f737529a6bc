class ApkEmitError(Exception):
    """Base class for apkemit-specific errors."""


# Job description
class JobConfigError(ApkEmitError):
    pass


# Pipeline stages
class ScanError(ApkEmitError):
    pass


class ArchiveWriteError(ApkEmitError):
    pass


class ControlRenderError(ApkEmitError):
    def __init__(self, field: str, message: str = "is not set"):
        super().__init__(f"control field {field!r} {message}")
        self.field = field


class SigningError(ApkEmitError):
    pass


class EmitError(ApkEmitError):
    pass


# Reading packages back
class PackageFormatError(ApkEmitError):
    pass
