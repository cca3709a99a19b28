# -*- coding: utf-8 -*-
"""HTTP(S) service reachability probes"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, TypedDict

import requests
from requests.adapters import HTTPAdapter

from zoneaudit._constants import (
    HTTP_CONNECT_TIMEOUT,
    HTTP_MAX_REDIRECTS,
    PROBE_CHUNK_SIZE,
    PROBE_TIMEOUT,
    RESOLVE_CHUNK_SIZE,
    USER_AGENT,
)

"""Copyright 2019-2025 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""


class ServiceProbeResult(TypedDict):
    host: str
    https_up: bool
    http_up: bool


def new_http_session() -> requests.Session:
    """Returns a session shared by DoH queries and service probes"""
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    session.max_redirects = HTTP_MAX_REDIRECTS
    # Every DoH race and probe pair can hold a connection at once
    pool_size = RESOLVE_CHUNK_SIZE * 4 + PROBE_CHUNK_SIZE * 2
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def probe_url(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = PROBE_TIMEOUT,
) -> bool:
    """
    Checks if a URL answers an HTTP GET request

    The status code is not inspected; any response counts.

    Args:
        url (str): The URL to request
        session (requests.Session): The HTTP session to use
        timeout (float): HTTP timeout in seconds

    Returns:
        bool: ``True`` if the request completed without a transport error
    """
    if session is None:
        session = new_http_session()
    logging.debug(f"Probing {url}")
    try:
        response = session.get(
            url, timeout=(min(HTTP_CONNECT_TIMEOUT, timeout), timeout), stream=True
        )
        response.close()
    except requests.RequestException as e:
        logging.debug(f"Probe of {url} failed: {e}")
        return False
    return True


def probe_service_host(
    host: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = PROBE_TIMEOUT,
) -> ServiceProbeResult:
    """
    Probes ``https://host`` and ``http://host`` concurrently

    Args:
        host (str): A hostname
        session (requests.Session): The HTTP session to use
        timeout (float): HTTP timeout in seconds

    Returns:
        dict: A ``dict`` with ``host``, ``https_up`` and ``http_up`` keys
    """
    if session is None:
        session = new_http_session()
    with ThreadPoolExecutor(max_workers=2) as executor:
        https_future = executor.submit(
            probe_url, f"https://{host}", session=session, timeout=timeout
        )
        http_future = executor.submit(
            probe_url, f"http://{host}", session=session, timeout=timeout
        )
        return {
            "host": host,
            "https_up": https_future.result(),
            "http_up": http_future.result(),
        }
