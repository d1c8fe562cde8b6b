# This file is part of webdav-adapter.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Exceptions raised by `~webdav_adapter.dav.WebDAVAdapter`.

Failures of the underlying transport are never seen by callers: they are
re-raised as one of the operation-specific exceptions below, with the
original exception available as ``__cause__``.
"""

from __future__ import annotations

__all__ = (
    "FilesystemError",
    "FilesystemOperationFailed",
    "UnableToCopyFile",
    "UnableToCreateDirectory",
    "UnableToDeleteDirectory",
    "UnableToDeleteFile",
    "UnableToMoveFile",
    "UnableToReadFile",
    "UnableToRetrieveMetadata",
    "UnableToWriteFile",
    "UnsupportedVisibility",
)


class FilesystemError(Exception):
    """Base class of all the exceptions raised by the adapter."""


class FilesystemOperationFailed(FilesystemError):
    """An operation on a single location failed.

    Parameters
    ----------
    location : `str`
        Logical path the operation was applied to.
    reason : `str`, optional
        Human readable explanation of the failure.
    """

    operation: str = "operate on"

    def __init__(self, location: str, reason: str = "") -> None:
        self.location = location
        self.reason = reason
        message = f"Unable to {self.operation} location: {location}."
        if reason:
            message += f" {reason}"
        super().__init__(message)


class UnableToReadFile(FilesystemOperationFailed):
    operation = "read file from"


class UnableToWriteFile(FilesystemOperationFailed):
    operation = "write file at"


class UnableToDeleteFile(FilesystemOperationFailed):
    operation = "delete file at"


class UnableToDeleteDirectory(FilesystemOperationFailed):
    operation = "delete directory at"


class UnableToCreateDirectory(FilesystemOperationFailed):
    operation = "create directory at"


class UnableToRetrieveMetadata(FilesystemOperationFailed):
    """Metadata of a location could not be retrieved, or the location is not
    of the expected kind.

    Parameters
    ----------
    location : `str`
        Logical path the metadata was requested for.
    metadata_type : `str`
        Kind of metadata requested, e.g. 'file_size' or 'list_contents'.
    reason : `str`, optional
        Human readable explanation of the failure.
    """

    def __init__(self, location: str, metadata_type: str, reason: str = "") -> None:
        self.metadata_type = metadata_type
        self.operation = f"retrieve the {metadata_type} for"
        super().__init__(location, reason)


class _TransferFailed(FilesystemError):
    operation: str = "transfer"

    def __init__(self, source: str, destination: str, reason: str = "") -> None:
        self.source = source
        self.destination = destination
        self.reason = reason
        message = f"Unable to {self.operation} file from {source} to {destination}."
        if reason:
            message += f" {reason}"
        super().__init__(message)


class UnableToMoveFile(_TransferFailed):
    operation = "move"


class UnableToCopyFile(_TransferFailed):
    operation = "copy"


class UnsupportedVisibility(FilesystemError, NotImplementedError):
    """WebDAV has no notion of visibility, so any attempt to read or set it
    fails.
    """
