# This file is part of webdav-adapter.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = (
    "DavClient",
    "DavClientError",
    "DavClientHttpError",
    "DavConfig",
    "DavConfigPool",
    "DavPropfindParser",
    "ResourceType",
    "expand_vars",
    "make_propfind_body",
    "normalize_url",
    "redact_url",
)

import logging
import os
import posixpath
import re
import threading
import xml.etree.ElementTree as eTree
from collections.abc import Iterable, Iterator, Mapping
from http import HTTPStatus
from typing import Any, BinaryIO
from urllib.parse import parse_qsl, urlparse, urlunparse

import yaml
from astropy import units as u
from urllib3 import PoolManager
from urllib3.exceptions import HTTPError
from urllib3.response import HTTPResponse
from urllib3.util import Retry, Timeout, Url, parse_url

from lsst.utils.timer import time_this

# Use the same logger than `dav.py`.
log = logging.getLogger(f"""{__name__.replace(".davutils", ".dav")}""")


def normalize_path(path: str | None) -> str:
    """Normalize the path component of a base URL.

    A path of the form "///a/b/c///../d/e/" would be normalized as "/a/b/d/e".
    The returned path is always absolute, i.e. starts by "/" and never
    ends by "/" except when the path is exactly "/".

    Parameters
    ----------
    path : `str`, optional
        Path to normalize (e.g., '/path/to/..///normalize/').

    Returns
    -------
    path : `str`
        Normalized path (e.g., '/path/normalize').
    """
    return "/" if not path else "/" + posixpath.normpath(path).lstrip("/")


def normalize_url(url: str, preserve_scheme: bool = False, preserve_path: bool = True) -> str:
    """Normalize a URL so that scheme be 'http' or 'https' and the URL path
    is normalized.

    Parameters
    ----------
    url : `str`
        URL to normalize (e.g., 'davs://example.org:1234///path/to//../dir/').
    preserve_scheme : `bool`
        If True the scheme of `url` will be preserved. Otherwise the scheme
        of the returned normalized URL will be 'http' or 'https'.
    preserve_path : `bool`
        If True, the path of `url` will be preserved in the returned
        normalized URL, otherwise, the returned URL will have '/' as path.

    Returns
    -------
    url : `str`
        Normalized URL (e.g. 'https://example.org:1234/path/dir').
    """
    parsed = parse_url(url)
    if parsed.scheme is None:
        scheme = "http"
    else:
        scheme = parsed.scheme if preserve_scheme else parsed.scheme.replace("dav", "http")
    path = normalize_path(parsed.path) if preserve_path else "/"
    return Url(scheme=scheme, host=parsed.host, port=parsed.port, path=path).url


def redact_url(url: str) -> str:
    """Return a modified `url` with authorization query redacted. The
    goal is that this method should be used for logging URLs to avoid
    leaking authorization tokens.

    Parameters
    ----------
    url : `str`

    Returns
    -------
    redacted_url : `str`
        For instance, when called with an URL like:

            https://host.example.org:1234/a/b/file.data?key1=value1&authz=token

        the returned value would be:

            https://host.example.org:1234/a/b/file.data?key1=value1&authz=[...]
    """
    parsed_url = urlparse(url)
    redacted_query: list[str] = []
    for pair in parse_qsl(parsed_url.query):
        if pair[0] == "authz":
            redacted_query.append("authz=[...]")
        else:
            redacted_query.append(f"{pair[0]}={pair[1]}")

    redacted_url = parsed_url._replace(query="&".join(redacted_query))
    return str(urlunparse(redacted_url))


def expand_vars(path: str | None) -> str | None:
    """Expand the environment variables in `path` and return the path with
    the value of the variable expanded.

    Parameters
    ----------
    path : `str` or `None`
        Abolute or relative path which may include an environment variable
        (e.g. '$HOME/path/to/my/file').

    Returns
    -------
    path: `str`
        The path with the values of the environment variables expanded.
    """
    return None if path is None else os.path.expandvars(path)


class DavClientError(Exception):
    """Raised by `DavClient` when a request could not be completed, either
    because the connection to the server failed or because the server
    responded with something this client does not understand.
    """


class DavClientHttpError(DavClientError):
    """Raised by `DavClient` when the server responds with an HTTP error
    status (400 and above).

    Parameters
    ----------
    method : `str`
        Request method, e.g. 'GET'.
    url : `str`
        Target URL of the request.
    status : `int`
        HTTP status code of the response.
    reason : `str`, optional
        Reason phrase of the response.
    """

    def __init__(self, method: str, url: str, status: int, reason: str | None = None) -> None:
        super().__init__(f"Unexpected response to {method} {redact_url(url)}: status {status} {reason or ''}")
        self.method = method
        self.url = url
        self.status = status
        self.reason = reason


class DavConfig:
    """Configurable settings a webDAV client must use when interacting with a
    particular storage endpoint.

    Parameters
    ----------
    config : `dict[str, Any]`
        Dictionary of configurable settings for the webdav endpoint which
        base URL is `config["base_url"]`.

        For instance, if `config["base_url"]` is

            "davs://webdav.example.org:1234/"

        any client built for a URL like

            "davs://webdav.example.org:1234/path/to/top/dir"

        will use the settings in this configuration.
    """

    # Timeout in seconds to establish a network connection with the remote
    # server.
    DEFAULT_TIMEOUT_CONNECT: float = 10.0

    # Timeout in seconds to read the response to a request sent to a server.
    # It must be large enough to allow for upload and download of files
    # of typical size.
    DEFAULT_TIMEOUT_READ: float = 300.0

    # Maximum number of network connections to persist against a single
    # "host:port" pair.
    DEFAULT_PERSISTENT_CONNECTIONS_PER_HOST: int = 20

    # Size of the buffer (in mebibytes, i.e. 1024*1024 bytes) the client
    # uses when sending requests and receiving responses.
    DEFAULT_BUFFER_SIZE: int = 5

    # Path to a directory or certificate bundle file where the certificates
    # of the trusted certificate authorities can be found.
    # If None, the certificates trusted by the system are used.
    DEFAULT_TRUSTED_AUTHORITIES: str | None = None

    # If this option is set to True, memory usage is computed and reported
    # when executing in debug mode. Computing memory usage is costly, so only
    # set this when debugging.
    DEFAULT_COLLECT_MEMORY_USAGE: bool = False

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        if config is None:
            config = {}

        if (base_url := expand_vars(config.get("base_url"))) is None:
            self._base_url = "_default_"
        else:
            self._base_url = normalize_url(base_url, preserve_path=False)

        self._timeout_connect: float = float(config.get("timeout_connect", DavConfig.DEFAULT_TIMEOUT_CONNECT))
        self._timeout_read: float = float(config.get("timeout_read", DavConfig.DEFAULT_TIMEOUT_READ))
        self._persistent_connections_per_host: int = int(
            config.get(
                "persistent_connections_per_host",
                DavConfig.DEFAULT_PERSISTENT_CONNECTIONS_PER_HOST,
            )
        )
        self._buffer_size: int = 1_048_576 * int(config.get("buffer_size", DavConfig.DEFAULT_BUFFER_SIZE))
        self._trusted_authorities: str | None = expand_vars(
            config.get("trusted_authorities", DavConfig.DEFAULT_TRUSTED_AUTHORITIES)
        )
        self._collect_memory_usage: bool = bool(
            config.get("collect_memory_usage", DavConfig.DEFAULT_COLLECT_MEMORY_USAGE)
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def timeout_connect(self) -> float:
        return self._timeout_connect

    @property
    def timeout_read(self) -> float:
        return self._timeout_read

    @property
    def persistent_connections_per_host(self) -> int:
        return self._persistent_connections_per_host

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @property
    def trusted_authorities(self) -> str | None:
        return self._trusted_authorities

    @property
    def collect_memory_usage(self) -> bool:
        return self._collect_memory_usage


class DavConfigPool:
    """Registry of configurable settings for all known webDAV endpoints.

    Parameters
    ----------
    filename : `str`, optional
        Name of an environment variable which value is the path of the
        configuration file. The path itself can include environment
        variables or '~', e.g. '$HOME/path/to/config.yaml'.

        The configuration file is a YAML file with the structure below:

          - base_url: "davs://webdav1.example.org:1234/"
            timeout_connect: 20.0
            timeout_read: 120.0
            persistent_connections_per_host: 10
            trusted_authorities: "/etc/grid-security/certificates"
            buffer_size: 5
            collect_memory_usage: false

          - base_url: "davs://webdav2.example.org:1234/"
            timeout_connect: 5.0
            ...

        All settings are optional. If no settings are found in the
        configuration file for a particular webDAV endpoint, sensible
        defaults will be used.

    Notes
    -----
    There is only a single instance of this class. This thead-safe singleton
    is intended to be initialized the first time a client is built from
    a URL.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls, filename: str | None = None) -> DavConfigPool:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)

        return cls._instance

    def __init__(self, filename: str | None = None) -> None:
        # Create a default configuration. This configuration is
        # used when a URL doest not match any of the endpoints in the
        # configuration.
        self._default_config: DavConfig = DavConfig()

        # The key of this dictionary is the URL of the webDAV endpoint,
        # e.g. "https://host.example.org:1234/"
        self._configs: dict[str, DavConfig] = {}

        if filename is None:
            return

        if (filename := os.getenv(filename)) is not None:
            filename = os.path.expandvars(filename)
            filename = os.path.expanduser(filename)
            with open(filename) as file:
                for config_item in yaml.safe_load(file) or []:
                    config = DavConfig(config_item)
                    if config.base_url not in self._configs:
                        self._configs[config.base_url] = config
                    else:
                        # We already have a configuration for the same
                        # endpoint. That is likely a human error in
                        # the configuration file.
                        raise ValueError(
                            f"""configuration file {filename} contains two configurations for """
                            f"""endpoint {config.base_url}"""
                        )

    def get_config_for_url(self, url: str) -> DavConfig:
        """Return the configuration to use a webDAV client when interacting
        with the server which hosts the resource at `url`.

        Parameters
        ----------
        url : `str`
            URL for which to obtain a configuration.
        """
        normalized_url: str = normalize_url(url, preserve_path=False)
        if (config := self._configs.get(normalized_url)) is not None:
            return config

        # No config was found for the specified URL. Use the default.
        return self._default_config

    def _destroy(self) -> None:
        """Destroy this class singleton instance.

        Helper method to be used in tests to reset global configuration.
        """
        with DavConfigPool._lock:
            DavConfigPool._instance = None


def make_retry(max_redirects: int = 10) -> Retry:
    """Create a ``urllib3.util.Retry`` object which follows redirections but
    never sends a failed request again.

    Parameters
    ----------
    max_redirects : `int`, optional
        Maximum number of redirections to follow for a single request.
    """
    return Retry(
        total=None,
        connect=0,
        read=0,
        status=0,
        other=0,
        redirect=max_redirects,
        raise_on_status=False,
    )


class ResourceType:
    """Value of the ``{DAV:}resourcetype`` property of a resource.

    Parameters
    ----------
    names : `~collections.abc.Iterable` [ `str` ]
        Clark-notation names of the elements found inside the property,
        e.g. ``{DAV:}collection``.
    """

    COLLECTION = "{DAV:}collection"

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._names: tuple[str, ...] = tuple(names)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceType):
            return NotImplemented
        return self._names == other._names

    def __repr__(self) -> str:
        return f"ResourceType({list(self._names)!r})"

    @property
    def is_collection(self) -> bool:
        return ResourceType.COLLECTION in self._names


def make_propfind_body(properties: Iterable[str]) -> bytes:
    """Return the XML body of a PROPFIND request for `properties`.

    Parameters
    ----------
    properties : `~collections.abc.Iterable` [ `str` ]
        Clark-notation names of the properties to request,
        e.g. ``{DAV:}getcontentlength``.
    """
    propfind = eTree.Element("{DAV:}propfind")
    prop = eTree.SubElement(propfind, "{DAV:}prop")
    for name in properties:
        eTree.SubElement(prop, name)

    return eTree.tostring(propfind, encoding="utf-8", xml_declaration=True)


class DavPropfindParser:
    """Helper class to parse the response body of a PROPFIND request."""

    # Regular expression to compare against the 'status' element of a
    # PROPFIND response's 'propstat' element.
    _status_ok_rex = re.compile(r"^HTTP/\S+ 200( .*)?$", re.IGNORECASE)

    def parse(self, body: bytes) -> dict[str, dict[str, Any]]:
        """Parse the XML-encoded contents of the response body to a webDAV
        PROPFIND request.

        Parameters
        ----------
        body : `bytes`
            XML-encoded response body to a PROPFIND request.

        Returns
        -------
        responses : `dict` [ `str`, `dict` [ `str`, `~typing.Any` ] ]
            The key is the 'href' of each resource, as sent by the server, in
            the order of the response. The value maps the Clark-notation name
            of each property the server reported with status 200 to its
            value. The value of ``{DAV:}resourcetype`` is a `ResourceType`,
            the value of any other property is its stripped text.

        Notes
        -----
        Is is expected that there is at least one reponse in `body`, otherwise
        this function raises.
        """
        # A response body to a PROPFIND request is of the form (indented for
        # readability):
        #
        # <?xml version="1.0" encoding="UTF-8"?>
        # <D:multistatus xmlns:D="DAV:">
        #     <D:response>
        #         <D:href>/path/to/resource</D:href>
        #         <D:propstat>
        #             <D:prop>
        #                 <D:resourcetype>
        #                     <D:collection/>
        #                 </D:resourcetype>
        #                 <D:getlastmodified>
        #                     Fri, 27 Jan 2023 13:59:01 GMT
        #                 </D:getlastmodified>
        #             </D:prop>
        #             <D:status>HTTP/1.1 200 OK</D:status>
        #         </D:propstat>
        #         <D:propstat>
        #             <D:prop>
        #                 <D:getcontentlength/>
        #             </D:prop>
        #             <D:status>HTTP/1.1 404 Not Found</D:status>
        #         </D:propstat>
        #     </D:response>
        #     <D:response>
        #        ...
        #     </D:response>
        # </D:multistatus>
        decoded_body: str = body.decode("utf-8").strip()
        multistatus = eTree.fromstring(decoded_body)
        responses: dict[str, dict[str, Any]] = {}
        for response in multistatus.findall("./{DAV:}response"):
            if (element := response.find("./{DAV:}href")) is None or element.text is None:
                raise ValueError(
                    "Property 'href' expected but not found in PROPFIND response: "
                    f"{eTree.tostring(response, encoding='unicode')}"
                )
            responses[element.text.strip()] = self._parse_properties(response)

        if not responses:
            raise ValueError(f"Unable to parse response for PROPFIND request: {decoded_body}")

        return responses

    def _parse_properties(self, response: eTree.Element) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        for propstat in response.findall("./{DAV:}propstat"):
            # Only extract properties with status OK.
            status = propstat.find("./{DAV:}status")
            if status is None or not self._status_ok_rex.match(str(status.text).strip()):
                continue

            for prop in propstat.findall("./{DAV:}prop"):
                for element in prop:
                    if element.tag == "{DAV:}resourcetype":
                        properties[element.tag] = ResourceType(child.tag for child in element)
                    else:
                        properties[element.tag] = (element.text or "").strip()

        return properties


class DavClient:
    """WebDAV client, configured to talk to a single storage endpoint.

    Instances of this class are thread-safe.

    Parameters
    ----------
    url : `str`
        Base URL of the storage endpoint (e.g.
        "davs://host.example.org:1234/path/to/top/dir"). Every locator given
        to this client is relative to this URL.
    config : `DavConfig`, optional
        Configuration to initialize this client.
    """

    def __init__(self, url: str, config: DavConfig | None = None) -> None:
        self._config: DavConfig = DavConfig() if config is None else config

        # Prepare the trusted authorities certificates
        ca_certs, ca_cert_dir = None, None
        if self._config.trusted_authorities is not None:
            if os.path.isdir(self._config.trusted_authorities):
                ca_cert_dir = self._config.trusted_authorities
            elif os.path.isfile(self._config.trusted_authorities):
                ca_certs = self._config.trusted_authorities
            else:
                raise FileNotFoundError(
                    f"Trusted authorities file or directory {self._config.trusted_authorities} does not exist"
                )

        self._pool_manager = PoolManager(
            # Number of connections to the same "host:port" to persist for
            # later reuse.
            maxsize=self._config.persistent_connections_per_host,
            retries=make_retry(),
            timeout=Timeout(
                connect=self._config.timeout_connect,
                read=self._config.timeout_read,
            ),
            # Size in bytes of the buffer for reading/writing data from/to
            # the underlying socket.
            blocksize=self._config.buffer_size,
            # We require verification of the server certificate.
            cert_reqs="CERT_REQUIRED",
            ca_cert_dir=ca_cert_dir,
            ca_certs=ca_certs,
        )

        self._propfind_parser: DavPropfindParser = DavPropfindParser()

        # Base URL always ends with a single "/" so that locators can be
        # appended to it, e.g. "https://host.example.org:1234/top/dir/"
        self._base_url: str = normalize_url(url).rstrip("/") + "/"

    def __str__(self) -> str:
        return f"DavClient({redact_url(self._base_url)})"

    @property
    def base_url(self) -> str:
        return self._base_url

    def get_absolute_url(self, locator: str) -> str:
        """Return the absolute URL of `locator`.

        Parameters
        ----------
        locator : `str`
            Percent-encoded path relative to the base URL of this client.
        """
        return self._base_url + locator.lstrip("/")

    def request(
        self,
        method: str,
        locator: str,
        body: BinaryIO | bytes | str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> HTTPResponse:
        """Send a generic HTTP request and return the response.

        Parameters
        ----------
        method : `str`
            Request method, e.g. 'GET', 'PUT', 'PROPFIND'.
        locator : `str`
            Percent-encoded path relative to the base URL of this client.
        body : `bytes` or `str` or `BinaryIO` or `None`, optional
            Request body.
        headers : `dict[str, str]`, optional
            Headers to sent with the request.

        Returns
        -------
        resp: `HTTPResponse`
            Response to the request as received from the server. Its body
            is preloaded and available via ``resp.data``.

        Raises
        ------
        DavClientHttpError
            Raised if the server responded with a status 400 or above.
        DavClientError
            Raised if the request could not be sent or the response
            could not be received.
        """
        url = self.get_absolute_url(locator)
        headers = {} if headers is None else dict(headers)
        if (length := _stream_length(body)) is not None and "Content-Length" not in headers:
            headers["Content-Length"] = str(length)

        log.debug("sending request %s %s", method, redact_url(url))

        try:
            with time_this(
                log,
                msg="%s %s",
                args=(
                    method,
                    redact_url(url),
                ),
                mem_usage=self._config.collect_memory_usage,
                mem_unit=u.mebibyte,
            ):
                resp = self._pool_manager.request(method, url, body=body, headers=headers)
        except HTTPError as exc:
            raise DavClientError(f"Unable to complete request {method} {redact_url(url)}: {exc}") from exc

        if resp.status >= HTTPStatus.BAD_REQUEST:
            raise DavClientHttpError(method, url, resp.status, resp.reason)

        return resp

    def propfind(
        self, locator: str, properties: Iterable[str], depth: int = 0
    ) -> dict[str, Any] | dict[str, dict[str, Any]]:
        """Send a PROPFIND request and return the properties found.

        Parameters
        ----------
        locator : `str`
            Percent-encoded path relative to the base URL of this client.
        properties : `~collections.abc.Iterable` [ `str` ]
            Clark-notation names of the properties to request.
        depth : `int`, optional
            Value of the 'Depth' header, either 0 or 1.

        Returns
        -------
        result : `dict`
            If `depth` is 0, the properties of the resource at `locator`. The
            returned dictionary is empty if there is no such resource.

            If `depth` is 1, a dictionary which key is the 'href' of each
            resource in the response and which value is the properties of
            that resource. The first entry is the resource at `locator`
            itself, followed by its members.
        """
        body = make_propfind_body(properties)
        headers = {
            "Depth": str(depth),
            "Content-Type": 'application/xml; charset="utf-8"',
        }
        try:
            resp = self.request("PROPFIND", locator, body=body, headers=headers)
        except DavClientHttpError as exc:
            if depth == 0 and exc.status == HTTPStatus.NOT_FOUND:
                return {}
            raise

        if resp.status != HTTPStatus.MULTI_STATUS:
            raise DavClientHttpError("PROPFIND", self.get_absolute_url(locator), resp.status, resp.reason)

        try:
            responses = self._propfind_parser.parse(resp.data)
        except (ValueError, eTree.ParseError) as exc:
            raise DavClientError(
                f"Unable to parse response to PROPFIND {redact_url(self.get_absolute_url(locator))}"
            ) from exc

        if depth == 0:
            return next(iter(responses.values()))

        return responses


def _stream_length(body: BinaryIO | bytes | str | None) -> int | None:
    """Return the number of bytes left to read in `body` if it is a seekable
    stream, so that uploads are not sent with chunked transfer encoding.
    """
    if body is None or isinstance(body, bytes | str):
        return None

    try:
        if not body.seekable():
            return None
        position = body.tell()
        end = body.seek(0, os.SEEK_END)
        body.seek(position)
    except (AttributeError, OSError):
        return None

    return end - position
