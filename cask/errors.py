class CaskError(Exception):
    """Base class for cask-specific errors."""


# Container structure
class FormatError(CaskError):
    pass


class OutOfBoundsError(CaskError):
    pass


# Lookups
class PathNotFoundError(CaskError, LookupError):
    pass


class PathIsDirectoryError(CaskError, LookupError):
    pass


# Encryption
class AuthenticationError(CaskError):
    pass


# Build
class BuildError(CaskError):
    pass
