# This file is part of webdav-adapter.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Filesystem operations on logical paths served by a webDAV server."""

from .attributes import *
from .dav import WebDAVAdapter
from .davutils import DavClient, DavConfig
from .errors import *
