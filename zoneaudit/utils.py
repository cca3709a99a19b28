# -*- coding: utf-8 -*-
"""DNS utility functions"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Optional
from collections.abc import Sequence

import dns.exception
import dns.resolver
import dns.reversename
from dns.nameserver import Nameserver

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")  # includes ZWSP, ZWNJ, ZWJ, BOM


class DNSException(Exception):
    """Raised when a general DNS error occurs"""

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout) and "timeout" in error.kwargs:
            error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        Exception.__init__(self, error)


class DNSExceptionNXDOMAIN(DNSException):
    """Raised when a NXDOMAIN DNS error (RCODE:3) occurs"""


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain by trimming it, removing zero-width characters
    and the trailing root dot, and lowering it

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: A normalized domain
    """
    domain = unicodedata.normalize("NFC", domain)
    domain = ZERO_WIDTH_RE.sub("", domain)
    return domain.strip().rstrip(".").lower()


def _rdata_to_text(record_type: str, rdata) -> Optional[str]:
    if record_type == "TXT":
        if not rdata.strings:
            return None
        # A TXT value may be split into several byte strings
        return b"".join(rdata.strings).decode(errors="replace")
    return rdata.to_text().rstrip(".")


def query_dns(
    domain: str,
    record_type: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> list[str]:
    """
    Queries DNS, retrying queries that time out

    Args:
        domain (str): The domain or subdomain to query about
        record_type (str): The record type to query for
        nameservers (list): A list of one or more nameservers to use
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): Sets the DNS timeout in seconds
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: The answers as text

    Raises:
        :exc:`dns.exception.DNSException`
    """
    domain = normalize_domain(domain)
    record_type = record_type.upper()
    timeout = float(timeout)
    if resolver is None:
        resolver = dns.resolver.Resolver()
        if nameservers is not None:
            resolver.nameservers = nameservers
        resolver.timeout = timeout
        resolver.lifetime = timeout
    attempt = 0
    while True:
        try:
            answers = resolver.resolve(domain, record_type, lifetime=timeout)
            break
        except dns.resolver.LifetimeTimeout:
            attempt += 1
            if attempt > timeout_retries:
                raise
            logging.debug(f"{record_type} query for {domain} timed out; retrying")
    records = [_rdata_to_text(record_type, rdata) for rdata in answers]
    return [record for record in records if record is not None]


def _resolve(domain: str, record_type: str, **dns_options) -> list[str]:
    """Runs :func:`query_dns`; an empty answer is an empty list"""
    logging.debug(f"Getting {record_type} records for {domain}")
    try:
        return query_dns(domain, record_type, **dns_options)
    except dns.resolver.NXDOMAIN:
        raise DNSExceptionNXDOMAIN(f"The domain {domain} does not exist.")
    except dns.resolver.NoAnswer:
        return []
    except dns.exception.DNSException as error:
        raise DNSException(error)


def get_a_records(domain: str, **dns_options) -> list[str]:
    """
    Queries DNS for A and AAAA records

    Args:
        domain (str): A domain name
        **dns_options: ``nameservers``, ``resolver``, ``timeout`` and
                       ``timeout_retries``, as used by :func:`query_dns`

    Returns:
        list: IPv4 addresses followed by IPv6 addresses

    Raises:
        :exc:`zoneaudit.utils.DNSException`
    """
    return _resolve(domain, "A", **dns_options) + _resolve(
        domain, "AAAA", **dns_options
    )


def get_txt_records(domain: str, **dns_options) -> list[str]:
    """
    Queries DNS for TXT records

    Raises:
        :exc:`zoneaudit.utils.DNSException`
    """
    return _resolve(domain, "TXT", **dns_options)


def get_mx_hostnames(domain: str, **dns_options) -> list[str]:
    """
    Queries DNS for mail exchange hostnames, most preferred first

    "No Service" (null) MX records are skipped.

    Raises:
        :exc:`zoneaudit.utils.DNSException`
    """
    exchanges = []
    for record in _resolve(domain, "MX", **dns_options):
        preference, _, hostname = record.partition(" ")
        hostname = normalize_domain(hostname)
        if hostname == "":
            continue
        exchanges.append((int(preference), hostname))
    return [hostname for _, hostname in sorted(exchanges)]


def get_reverse_dns(ip_address: str, **dns_options) -> list[str]:
    """
    Queries for the reverse DNS hostnames of an IP address

    Args:
        ip_address (str): An IPv4 or IPv6 address
        **dns_options: See :func:`get_a_records`

    Returns:
        list: Normalized hostnames; empty if there are none

    Raises:
        :exc:`zoneaudit.utils.DNSException`
    """
    name = dns.reversename.from_address(ip_address).to_text()
    try:
        hostnames = _resolve(name, "PTR", **dns_options)
    except DNSExceptionNXDOMAIN:
        return []
    return [normalize_domain(hostname) for hostname in hostnames]
