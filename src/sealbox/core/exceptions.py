"""
Exceptions for SealBox
Every codec error is terminal for the transfer it was raised in
"""


class SealBoxError(Exception):
    # general container for errors
    pass


class MalformedFrameError(SealBoxError):
    # raised when a frame header or frame boundary cannot be parsed
    pass


class AuthenticationFailedError(SealBoxError):
    # raised on a tag mismatch, an out-of-order frame or a failed unseal
    pass


class EncryptionError(SealBoxError):
    # raised when a chunk cannot be framed (bad size, counter exhausted)
    pass


class InvalidRangeError(SealBoxError, ValueError):
    # raised when a range spec cannot be parsed or does not fit the object
    pass


class InvalidMetadataError(SealBoxError):
    # raised when encryption metadata is missing or uses an unknown scheme
    pass


class StorageError(SealBoxError):
    # raised if storage fails in some way
    pass


class ObjectNotFoundError(StorageError):
    # raised if an object (or its bucket) is not in storage
    pass
