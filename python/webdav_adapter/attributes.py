# This file is part of webdav-adapter.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("DirectoryAttributes", "FileAttributes", "StorageAttributes")


class StorageAttributes:
    """Attributes of a file or directory as seen by the callers of the
    adapter.

    Parameters
    ----------
    path : `str`
        Logical path of the resource, without leading nor trailing "/".
    """

    TYPE_FILE = "file"
    TYPE_DIRECTORY = "dir"

    type: str = ""

    def __init__(self, path: str) -> None:
        self._path: str = path.strip("/")

    @property
    def path(self) -> str:
        return self._path

    def is_file(self) -> bool:
        return self.type == StorageAttributes.TYPE_FILE

    def is_dir(self) -> bool:
        return self.type == StorageAttributes.TYPE_DIRECTORY

    def _fields(self) -> tuple:
        return (self._path,)

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self._fields() == other._fields()

    def __hash__(self) -> int:
        return hash((type(self), self._fields()))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(path={self._path!r})"


class DirectoryAttributes(StorageAttributes):
    """Attributes of a directory. Only its path is known."""

    type = StorageAttributes.TYPE_DIRECTORY


class FileAttributes(StorageAttributes):
    """Attributes of a file.

    Parameters
    ----------
    path : `str`
        Logical path of the file.
    file_size : `int`, optional
        Size of the file in bytes, if the server reported it.
    mime_type : `str`, optional
        MIME type of the file contents, if the server reported it.
    last_modified : `int`, optional
        Last modification time as a Unix timestamp in seconds, if the
        server reported it.
    """

    type = StorageAttributes.TYPE_FILE

    def __init__(
        self,
        path: str,
        file_size: int | None = None,
        mime_type: str | None = None,
        last_modified: int | None = None,
    ) -> None:
        super().__init__(path)
        self._file_size = file_size
        self._mime_type = mime_type
        self._last_modified = last_modified

    @property
    def file_size(self) -> int | None:
        return self._file_size

    @property
    def mime_type(self) -> str | None:
        return self._mime_type

    @property
    def last_modified(self) -> int | None:
        return self._last_modified

    def _fields(self) -> tuple:
        return (self._path, self._file_size, self._mime_type, self._last_modified)

    def __repr__(self) -> str:
        return (
            f"FileAttributes(path={self._path!r}, file_size={self._file_size!r}, "
            f"mime_type={self._mime_type!r}, last_modified={self._last_modified!r})"
        )
