# This file is part of webdav-adapter.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = (
    "CONFIG_ENV_VAR",
    "METADATA_FIELDS",
    "WebDAVAdapter",
    "decode_path",
    "encode_path",
    "normalize_properties",
)

import datetime
import functools
import io
import logging
import posixpath
from collections.abc import Iterator, Mapping
from email.utils import parsedate_to_datetime
from http import HTTPStatus
from typing import Any, BinaryIO
from urllib.parse import quote, unquote, urlsplit

from .attributes import DirectoryAttributes, FileAttributes, StorageAttributes
from .davutils import DavClient, DavClientError, DavConfigPool, ResourceType
from .errors import (
    FilesystemError,
    FilesystemOperationFailed,
    UnableToCopyFile,
    UnableToCreateDirectory,
    UnableToDeleteDirectory,
    UnableToDeleteFile,
    UnableToMoveFile,
    UnableToReadFile,
    UnableToRetrieveMetadata,
    UnableToWriteFile,
    UnsupportedVisibility,
)

log = logging.getLogger(__name__)

# Name of the environment variable holding the path of the YAML file with
# the settings of the known webDAV endpoints.
CONFIG_ENV_VAR = "WEBDAV_ADAPTER_CONFIG"

# Properties requested to the server for every resource.
METADATA_FIELDS: tuple[str, ...] = (
    "{DAV:}displayname",
    "{DAV:}getcontentlength",
    "{DAV:}getcontenttype",
    "{DAV:}getlastmodified",
    "{DAV:}iscollection",
    "{DAV:}resourcetype",
)

# Candidate keys for each file attribute, in order of preference. Depending
# on the server and on how the property set was built, the same information
# may be found under a header-style name or under its DAV property name.
FILE_SIZE_KEYS: tuple[str, ...] = ("content-length", "{DAV:}getcontentlength")
MIME_TYPE_KEYS: tuple[str, ...] = ("content-type", "{DAV:}getcontenttype")
LAST_MODIFIED_KEYS: tuple[str, ...] = ("last-modified", "{DAV:}getlastmodified")


def encode_path(path: str) -> str:
    """Percent-encode each segment of `path` so that it can be sent to the
    server.

    Parameters
    ----------
    path : `str`
        Logical path with "/" as separator, e.g. "My Library/a+b.txt".

    Returns
    -------
    locator : `str`
        Encoded path, e.g. "My%20Library/a%2Bb.txt". The "/" separators are
        kept as is.
    """
    return "/".join(quote(segment, safe="") for segment in path.split("/"))


def decode_path(locator: str, prefix: str = "") -> str:
    """Return the logical path designated by a locator found in a server
    response.

    Parameters
    ----------
    locator : `str`
        Value of an 'href' element, either a path (absolute or relative) or
        an absolute URL.
    prefix : `str`, optional
        Decoded path of the base URL of the client. It is removed from
        absolute locators which start with it.

    Returns
    -------
    path : `str`
        Decoded path without leading nor trailing "/".
    """
    path = unquote(urlsplit(locator).path)
    if (root := prefix.strip("/")) and path.startswith("/"):
        root = "/" + root
        if path == root or path.startswith(root + "/"):
            path = path[len(root) :]

    return path.strip("/")


def _first_present(properties: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if (value := properties.get(key)) is not None and value != "":
            return value

    return None


def _parse_file_size(value: Any, path: str) -> int | None:
    try:
        size = int(str(value).strip())
    except ValueError:
        log.warning("ignoring invalid content length %r for %s", value, path)
        return None

    if size < 0:
        log.warning("ignoring negative content length %d for %s", size, path)
        return None

    return size


def _parse_last_modified(value: Any, path: str) -> int | None:
    # Last modified timestamp is expected to be of the form
    # 'Wed, 12 Mar 2025 10:11:13 GMT' but some servers use ISO 8601.
    text = str(value).strip()
    try:
        timestamp = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        try:
            timestamp = datetime.datetime.fromisoformat(text)
        except ValueError:
            log.warning("ignoring invalid last modification date %r for %s", value, path)
            return None

    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=datetime.UTC)

    return int(timestamp.timestamp())


def is_collection(properties: Mapping[str, Any]) -> bool:
    """Return True if `properties` describe a directory.

    Servers signal a collection either with a ``{DAV:}collection`` element in
    the ``{DAV:}resourcetype`` property or with a ``{DAV:}iscollection``
    property equal to "1". Either is enough.
    """
    resource_type = properties.get("{DAV:}resourcetype")
    if isinstance(resource_type, ResourceType) and resource_type.is_collection:
        return True

    return properties.get("{DAV:}iscollection") == "1"


def normalize_properties(properties: Mapping[str, Any], path: str) -> StorageAttributes | None:
    """Build the attributes of the resource at `path` from the properties
    reported by the server.

    Parameters
    ----------
    properties : `~collections.abc.Mapping` [ `str`, `~typing.Any` ]
        Properties of a single resource, as returned by a PROPFIND request.
    path : `str`
        Logical path of the resource.

    Returns
    -------
    attributes : `StorageAttributes` or `None`
        `None` if `properties` is empty, which means the resource does not
        exist. A `DirectoryAttributes` for a collection and a
        `FileAttributes` otherwise. The size, MIME type and modification
        time of a file are `None` when the server did not report them or
        reported them in a form that could not be understood.
    """
    if not properties:
        return None

    path = path.strip("/")
    if is_collection(properties):
        return DirectoryAttributes(path)

    file_size = _first_present(properties, FILE_SIZE_KEYS)
    mime_type = _first_present(properties, MIME_TYPE_KEYS)
    last_modified = _first_present(properties, LAST_MODIFIED_KEYS)
    return FileAttributes(
        path,
        file_size=_parse_file_size(file_size, path) if file_size is not None else None,
        mime_type=str(mime_type) if mime_type is not None else None,
        last_modified=_parse_last_modified(last_modified, path) if last_modified is not None else None,
    )


def _is_success(status: int) -> bool:
    return HTTPStatus.OK <= status < HTTPStatus.MULTIPLE_CHOICES


def _parent(path: str) -> str:
    return posixpath.dirname(path.strip("/"))


@functools.lru_cache
def _config_pool() -> DavConfigPool:
    """Return the registry of endpoint settings, loaded once from the file
    named by `CONFIG_ENV_VAR`.
    """
    return DavConfigPool(CONFIG_ENV_VAR)


class WebDAVAdapter:
    """Filesystem operations on logical paths, served by a webDAV server.

    Paths are "/" separated and relative to the base URL of `client`.
    Leading and trailing "/" are ignored, the empty path is the top
    directory.

    Parameters
    ----------
    client : `DavClient`
        Client used to send the webDAV requests.

    Notes
    -----
    The adapter keeps no state besides its client, so a single instance can
    be shared by several threads. Nothing is cached: every call is served
    by the server.
    """

    def __init__(self, client: DavClient) -> None:
        self._client = client

        # Decoded path of the base URL, removed from the absolute hrefs
        # found in PROPFIND responses.
        self._prefix: str = unquote(urlsplit(client.get_absolute_url("")).path)

    @classmethod
    def from_url(cls, url: str) -> WebDAVAdapter:
        """Create an adapter for the server at `url`, configured with the
        settings registered for that endpoint.

        Parameters
        ----------
        url : `str`
            Base URL, e.g. "davs://webdav.example.org:1234/path/to/top/dir".
        """
        config = _config_pool().get_config_for_url(url)
        return cls(DavClient(url, config))

    def __str__(self) -> str:
        return f"WebDAVAdapter({self._client})"

    def _get_metadata(self, path: str, metadata_type: str) -> StorageAttributes | None:
        try:
            properties = self._client.propfind(encode_path(path), METADATA_FIELDS)
        except DavClientError as exc:
            raise UnableToRetrieveMetadata(path, metadata_type, str(exc)) from exc

        return normalize_properties(properties, path)

    def exists(self, path: str) -> bool:
        """Return True if a file or directory exists at `path`.

        Any failure to retrieve the metadata of `path` is reported as a
        non-existent resource.
        """
        log.debug("exists %s", path)

        try:
            return self._get_metadata(path, "exists") is not None
        except FilesystemError as exc:
            log.debug("considering %s as non-existent: %s", path, exc)
            return False

    def read(self, path: str) -> bytes:
        """Return the contents of the file at `path`."""
        log.debug("read %s", path)

        try:
            resp = self._client.request("GET", encode_path(path))
        except DavClientError as exc:
            raise UnableToReadFile(path, str(exc)) from exc

        if resp.status != HTTPStatus.OK:
            raise UnableToReadFile(path, f"HTTP status code is {resp.status}, not 200.")

        return resp.data

    def read_stream(self, path: str) -> BinaryIO:
        """Return a stream positioned at the start of the contents of the
        file at `path`.
        """
        log.debug("read_stream %s", path)

        stream = io.BytesIO(self.read(path))
        stream.seek(0)
        return stream

    def write(self, path: str, contents: bytes, config: Mapping[str, Any] | None = None) -> None:
        """Create or replace the file at `path`.

        Missing parent directories are created first.

        Parameters
        ----------
        path : `str`
            Logical path of the file.
        contents : `bytes`
            New contents of the file.
        config : `~collections.abc.Mapping`, optional
            Write options. A 'visibility' option is rejected.
        """
        log.debug("write %s", path)
        self._write(path, contents, config)

    def write_stream(self, path: str, contents: BinaryIO, config: Mapping[str, Any] | None = None) -> None:
        """Create or replace the file at `path` with the data read from
        `contents`.
        """
        log.debug("write_stream %s", path)
        self._write(path, contents, config)

    def _write(self, path: str, contents: BinaryIO | bytes, config: Mapping[str, Any] | None) -> None:
        if config is not None and config.get("visibility"):
            raise UnsupportedVisibility(f"{type(self).__name__} does not support visibility settings.")

        self.create_directory(_parent(path))

        try:
            resp = self._client.request("PUT", encode_path(path), body=contents)
        except DavClientError as exc:
            raise UnableToWriteFile(path, str(exc)) from exc

        if not _is_success(resp.status):
            raise UnableToWriteFile(path, f"HTTP status code is {resp.status}.")

    def move(self, source: str, destination: str, config: Mapping[str, Any] | None = None) -> None:
        """Move the resource at `source` to `destination`."""
        log.debug("move %s to %s", source, destination)

        headers = {"Destination": self._client.get_absolute_url(encode_path(destination))}
        try:
            resp = self._client.request("MOVE", encode_path(source), headers=headers)
        except DavClientError as exc:
            raise UnableToMoveFile(source, destination, str(exc)) from exc

        if not _is_success(resp.status):
            raise UnableToMoveFile(source, destination, f"HTTP status code is {resp.status}.")

    def copy(self, source: str, destination: str, config: Mapping[str, Any] | None = None) -> None:
        """Copy the resource at `source` to `destination` with a server-side
        COPY. Missing parent directories of `destination` are created first.
        """
        log.debug("copy %s to %s", source, destination)

        self.create_directory(_parent(destination))

        headers = {"Destination": self._client.get_absolute_url(encode_path(destination))}
        try:
            resp = self._client.request("COPY", encode_path(source), headers=headers)
        except DavClientError as exc:
            raise UnableToCopyFile(source, destination, str(exc)) from exc

        if not _is_success(resp.status):
            raise UnableToCopyFile(source, destination, f"HTTP status code is {resp.status}.")

    def delete(self, path: str) -> None:
        """Delete the file at `path`."""
        log.debug("delete %s", path)
        self._delete(path, UnableToDeleteFile)

    def delete_directory(self, path: str) -> None:
        """Delete the directory at `path` and everything below it."""
        log.debug("delete_directory %s", path)
        self._delete(path, UnableToDeleteDirectory)

    def _delete(self, path: str, error: type[FilesystemOperationFailed]) -> None:
        try:
            resp = self._client.request("DELETE", encode_path(path))
        except DavClientError as exc:
            raise error(path, str(exc)) from exc

        if not _is_success(resp.status):
            raise error(path, f"HTTP status code is {resp.status}.")

    def create_directory(self, path: str, config: Mapping[str, Any] | None = None) -> None:
        """Create the directory at `path` and any missing parent.

        Nothing is done if `path` is the top directory or if something already
        exists at `path`. Parents are created before their children, so a
        failure may leave some of them behind.

        Parameters
        ----------
        path : `str`
            Logical path of the directory.
        config : `~collections.abc.Mapping`, optional
            Unused, accepted for symmetry with the other write operations.
        """
        path = path.strip("/")
        if not path or self.exists(path):
            return

        log.debug("create_directory %s", path)

        if parent := _parent(path):
            self.create_directory(parent, config)

        try:
            resp = self._client.request("MKCOL", encode_path(path) + "/")
        except DavClientError as exc:
            raise UnableToCreateDirectory(path, str(exc)) from exc

        if resp.status != HTTPStatus.CREATED:
            raise UnableToCreateDirectory(path, f"HTTP status code is {resp.status}, not 201.")

    def list_contents(self, path: str, deep: bool = False) -> Iterator[StorageAttributes]:
        """Iterate over the files and directories in directory `path`.

        Parameters
        ----------
        path : `str`
            Logical path of the directory.
        deep : `bool`, optional
            If True, the contents of each subdirectory is yielded right after
            the subdirectory itself.

        Yields
        ------
        attributes : `StorageAttributes`
            Attributes of each member.

        Notes
        -----
        A single PROPFIND request is sent per directory, when the iteration
        reaches it. A failure to list a directory is raised as
        `UnableToRetrieveMetadata` after the items already yielded.
        """
        path = path.strip("/")
        log.debug("list_contents %s deep=%s", path, deep)

        try:
            responses = self._client.propfind(encode_path(path) + "/", METADATA_FIELDS, depth=1)
        except DavClientError as exc:
            raise UnableToRetrieveMetadata(path, "list_contents", str(exc)) from exc

        entries = iter(responses.items())

        # The first entry is the directory itself.
        next(entries, None)

        for href, properties in entries:
            child_path = decode_path(href, self._prefix)
            if child_path == path:
                continue

            if (attributes := normalize_properties(properties, child_path)) is None:
                continue

            yield attributes

            if deep and attributes.is_dir():
                yield from self.list_contents(child_path, deep=True)

    def _file_attributes(self, path: str, metadata_type: str) -> FileAttributes:
        attributes = self._get_metadata(path, metadata_type)
        if attributes is None:
            raise UnableToRetrieveMetadata(path, metadata_type, "file not found")

        if not isinstance(attributes, FileAttributes):
            raise UnableToRetrieveMetadata(path, metadata_type, "not a file")

        return attributes

    def file_size(self, path: str) -> FileAttributes:
        """Return the attributes of the file at `path` for reading its
        size.
        """
        log.debug("file_size %s", path)
        return self._file_attributes(path, "file_size")

    def mime_type(self, path: str) -> FileAttributes:
        log.debug("mime_type %s", path)
        return self._file_attributes(path, "mime_type")

    def last_modified(self, path: str) -> FileAttributes:
        log.debug("last_modified %s", path)
        return self._file_attributes(path, "last_modified")

    def visibility(self, path: str) -> FileAttributes:
        raise UnsupportedVisibility(f"{type(self).__name__} does not support visibility. Path: {path}")

    def set_visibility(self, path: str, visibility: str) -> None:
        raise UnsupportedVisibility(
            f"{type(self).__name__} does not support visibility. Path: {path}, visibility: {visibility}"
        )
