# -*- coding: utf-8 -*-
"""DNS over HTTPS (DoH) JSON API client"""

from __future__ import annotations

import ipaddress
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from collections.abc import Sequence

import requests

from zoneaudit._constants import DOH_MAX_PARALLEL, HTTP_CONNECT_TIMEOUT
from zoneaudit.utils import normalize_domain

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

DOH_RECORD_TYPE_CODES = {"A": 1, "CNAME": 5, "AAAA": 28}


def _parse_doh_answers(payload: dict, record_type: str) -> list[str]:
    records = []
    type_code = DOH_RECORD_TYPE_CODES.get(record_type)
    for answer in payload.get("Answer") or []:
        if not isinstance(answer, dict):
            continue
        if type_code is not None and answer.get("type", type_code) != type_code:
            continue
        data = answer.get("data")
        if not isinstance(data, str):
            continue
        data = data.strip()
        if record_type == "CNAME":
            data = normalize_domain(data)
            if data == "":
                continue
        elif record_type in ("A", "AAAA"):
            try:
                address = ipaddress.ip_address(data)
            except ValueError:
                continue
            expected_version = 4 if record_type == "A" else 6
            if address.version != expected_version:
                continue
            data = str(address)
        if data not in records:
            records.append(data)
    return records


def query_doh_endpoint(
    session: requests.Session,
    endpoint: str,
    name: str,
    record_type: str,
    *,
    timeout: float = 2.0,
) -> list[str]:
    """
    Queries a single DoH endpoint using the JSON API

    Any transport error, non-success status or malformed payload is treated
    as an empty answer.

    Args:
        session (requests.Session): The HTTP session to use
        endpoint (str): The DoH endpoint URL
        name (str): The name to query
        record_type (str): ``A``, ``AAAA`` or ``CNAME``
        timeout (float): HTTP timeout in seconds

    Returns:
        list: A de-duplicated list of answers
    """
    record_type = record_type.upper()
    logging.debug(f"Querying {endpoint} for {record_type} records on {name}")
    try:
        response = session.get(
            endpoint,
            params={"name": name, "type": record_type},
            headers={"accept": "application/dns-json"},
            timeout=(min(HTTP_CONNECT_TIMEOUT, timeout), timeout),
        )
        if not response.ok:
            logging.debug(
                f"{endpoint} returned HTTP {response.status_code} for {name}"
            )
            return []
        payload = response.json()
    except (requests.RequestException, ValueError) as e:
        logging.debug(f"DoH query to {endpoint} for {name} failed: {e}")
        return []
    if not isinstance(payload, dict):
        return []
    return _parse_doh_answers(payload, record_type)


def query_doh(
    session: requests.Session,
    endpoints: Sequence[str],
    name: str,
    record_type: str,
    *,
    timeout: float = 2.0,
) -> list[str]:
    """
    Races up to three DoH endpoints and returns the first non-empty answer

    Args:
        session (requests.Session): The HTTP session to use
        endpoints (list): DoH endpoint URLs in order of preference
        name (str): The name to query
        record_type (str): ``A``, ``AAAA`` or ``CNAME``
        timeout (float): HTTP timeout in seconds for each request

    Returns:
        list: The first non-empty answer, or an empty list
    """
    endpoints = list(endpoints)[:DOH_MAX_PARALLEL]
    if len(endpoints) == 0:
        return []
    executor = ThreadPoolExecutor(max_workers=len(endpoints))
    try:
        futures = [
            executor.submit(
                query_doh_endpoint,
                session,
                endpoint,
                name,
                record_type,
                timeout=timeout,
            )
            for endpoint in endpoints
        ]
        for future in as_completed(futures):
            records = future.result()
            if len(records) > 0:
                return records
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return []
