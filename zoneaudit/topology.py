# -*- coding: utf-8 -*-
"""Concurrent DNS topology resolution"""

from __future__ import annotations

import ipaddress
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional, TypedDict
from collections.abc import Iterable, Sequence

import dns.exception
import dns.resolver
import requests

from zoneaudit._constants import (
    DEFAULT_DNS_SERVER,
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_DOH_ENDPOINTS,
    DEFAULT_LOOKUP_TIMEOUT_MS,
    DEFAULT_MAX_HOPS,
    DNS_SERVER_DOH_ENDPOINTS,
    DOH_PROVIDER_DNS_SERVERS,
    MAX_LOOKUP_TIMEOUT_MS,
    MAX_MAX_HOPS,
    MIN_LOOKUP_TIMEOUT_MS,
    MIN_MAX_HOPS,
    PROBE_CHUNK_SIZE,
    RESOLVE_CHUNK_SIZE,
)
from zoneaudit.cache import HostCacheKey, HostResolutionCache
from zoneaudit.doh import query_doh
from zoneaudit.probe import (
    ServiceProbeResult,
    new_http_session,
    probe_service_host,
)
from zoneaudit.utils import (
    DNSException,
    get_reverse_dns,
    normalize_domain,
    query_dns,
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

RESOLVER_MODES = ("dns", "doh")
LEGACY_DNS_SERVER = "__legacy__"
CUSTOM_DNS_SERVER = "custom"
NO_RECORDS_ERROR = "no CNAME/A/AAAA records found"


class TopologyConfigError(Exception):
    """Raised when a topology resolution is configured incorrectly"""


class ReverseHostnameResult(TypedDict):
    ip: str
    hostnames: list[str]


class HostnameChainResult(TypedDict):
    name: str
    chain: list[str]
    terminal: str
    ipv4: list[str]
    ipv6: list[str]
    reverse_hostnames: list[ReverseHostnameResult]
    error: Optional[str]


class TopologyBatchResult(TypedDict):
    resolutions: list[HostnameChainResult]
    probes: list[ServiceProbeResult]


def _unique(values: Iterable[str]) -> list[str]:
    unique_values = []
    for value in values:
        if value not in unique_values:
            unique_values.append(value)
    return unique_values


def _clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, value))


def resolve_dns_server(
    dns_server: Optional[str] = None,
    custom_dns_server: Optional[str] = None,
    doh_provider: Optional[str] = None,
) -> str:
    """
    Works out which DNS server a lookup should use

    Args:
        dns_server (str): A server IP, ``custom``, or ``__legacy__``/empty to
                          use the server of ``doh_provider``
        custom_dns_server (str): The server to use when ``dns_server`` is
                                 ``custom``
        doh_provider (str): ``cloudflare``, ``google`` or ``quad9``

    Returns:
        str: The selected DNS server
    """
    if dns_server is None:
        dns_server = DEFAULT_DNS_SERVER
    selected = dns_server.strip()
    if selected.lower() == CUSTOM_DNS_SERVER:
        custom = (custom_dns_server or "").strip()
        if custom != "":
            return custom
    if selected != "" and selected != LEGACY_DNS_SERVER:
        return selected
    provider = (doh_provider or "cloudflare").strip().lower()
    return DOH_PROVIDER_DNS_SERVERS.get(provider, DEFAULT_DNS_SERVER)


def _doh_endpoint_for_server(dns_server: str, doh_custom_url: Optional[str]) -> str:
    server = dns_server.strip()
    custom_url = (doh_custom_url or "").strip()
    if server.lower() == CUSTOM_DNS_SERVER and custom_url != "":
        return custom_url
    if server in DNS_SERVER_DOH_ENDPOINTS:
        return DNS_SERVER_DOH_ENDPOINTS[server]
    if custom_url != "":
        return custom_url
    return DEFAULT_DOH_ENDPOINTS[0]


def resolve_doh_endpoints(
    dns_server: Optional[str] = None,
    custom_dns_server: Optional[str] = None,
    doh_custom_url: Optional[str] = None,
    doh_provider: Optional[str] = None,
) -> list[str]:
    """
    Lists DoH endpoints in order of preference

    The endpoint matching the selected DNS server comes first, followed by
    the public Cloudflare, Google and Quad9 endpoints.

    Args:
        dns_server (str): See :func:`resolve_dns_server`
        custom_dns_server (str): See :func:`resolve_dns_server`
        doh_custom_url (str): A DoH endpoint for servers with no known endpoint
        doh_provider (str): See :func:`resolve_dns_server`

    Returns:
        list: De-duplicated DoH endpoint URLs
    """
    selected = resolve_dns_server(dns_server, custom_dns_server, doh_provider)
    preferred = _doh_endpoint_for_server(selected, doh_custom_url)
    return _unique([preferred] + DEFAULT_DOH_ENDPOINTS)


def build_dns_resolver(
    dns_server: Optional[str] = None,
    custom_dns_server: Optional[str] = None,
    doh_provider: Optional[str] = None,
) -> dns.resolver.Resolver:
    """
    Builds the resolver used for direct DNS lookups

    An IP address selects a resolver bound to that server only. Anything
    else uses the system configuration, or Cloudflare if there is none.

    Returns:
        dns.resolver.Resolver: A resolver

    Raises:
        :exc:`zoneaudit.topology.TopologyConfigError`
    """
    target = resolve_dns_server(dns_server, custom_dns_server, doh_provider)
    try:
        ipaddress.ip_address(target)
        is_ip = True
    except ValueError:
        is_ip = False
    try:
        if is_ip:
            resolver = dns.resolver.Resolver(configure=False)
            resolver.nameservers = [target]
        else:
            try:
                resolver = dns.resolver.Resolver()
            except dns.resolver.NoResolverConfiguration:
                logging.debug(
                    "No system resolver configuration found; using Cloudflare"
                )
                resolver = dns.resolver.Resolver(configure=False)
                resolver.nameservers = ["1.1.1.1", "1.0.0.1"]
    except (ValueError, dns.exception.DNSException) as e:
        raise TopologyConfigError(f"Unable to build a resolver for {target}: {e}")
    resolver.timeout = DEFAULT_DNS_TIMEOUT
    resolver.lifetime = DEFAULT_DNS_TIMEOUT
    resolver.retry_servfail = False
    logging.debug(f"Using DNS resolver {resolver.nameservers}")
    return resolver


def _lookup(
    resolver: dns.resolver.Resolver, name: str, record_type: str, timeout: float
) -> list[str]:
    try:
        return query_dns(
            name, record_type, resolver=resolver, timeout=timeout, timeout_retries=0
        )
    except dns.exception.DNSException as e:
        logging.debug(f"{record_type} lookup for {name} failed: {e}")
        return []


def _addresses(records: list[str], version: int) -> list[str]:
    addresses = []
    for record in records:
        try:
            address = ipaddress.ip_address(record)
        except ValueError:
            continue
        if address.version == version:
            addresses.append(str(address))
    return _unique(addresses)


def resolve_chain_for_host(
    host: str,
    *,
    resolver: dns.resolver.Resolver,
    doh_endpoints: Sequence[str] = (),
    session: Optional[requests.Session] = None,
    max_hops: int = DEFAULT_MAX_HOPS,
    lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT_MS / 1000,
    disable_ptr_lookups: bool = False,
) -> HostnameChainResult:
    """
    Follows the CNAME chain of a hostname and resolves its addresses

    Each lookup goes to the resolver first and falls back to racing the DoH
    endpoints. Lookup failures are treated as empty answers, so this never
    raises for a single failed lookup.

    Args:
        host (str): A hostname
        resolver (dns.resolver.Resolver): The primary resolver
        doh_endpoints (list): DoH endpoints to fall back to
        session (requests.Session): The HTTP session for DoH queries
        max_hops (int): The maximum number of CNAMEs to follow
        lookup_timeout (float): The timeout in seconds of each lookup
        disable_ptr_lookups (bool): Skip reverse DNS lookups

    Returns:
        dict: A ``dict`` with the following keys:
            - ``name`` - The normalized hostname
            - ``chain`` - The hostname followed by each CNAME target
            - ``terminal`` - The last name in the chain
            - ``ipv4`` - IPv4 addresses of the terminal name
            - ``ipv6`` - IPv6 addresses of the terminal name
            - ``reverse_hostnames`` - ``ip``/``hostnames`` dicts
            - ``error`` - An error message or ``None``
    """
    name = normalize_domain(host)
    if name == "":
        return {
            "name": name,
            "chain": [],
            "terminal": "",
            "ipv4": [],
            "ipv6": [],
            "reverse_hostnames": [],
            "error": "empty hostname",
        }
    if session is None and len(doh_endpoints) > 0:
        session = new_http_session()

    def doh(query_name: str, record_type: str) -> list[str]:
        if len(doh_endpoints) == 0:
            return []
        return query_doh(
            session, doh_endpoints, query_name, record_type, timeout=lookup_timeout
        )

    logging.debug(f"Resolving the hostname chain of {name}")
    chain = [name]
    current = name
    for _ in range(max_hops):
        records = _lookup(resolver, current, "CNAME", lookup_timeout)
        targets = [t for t in map(normalize_domain, records) if t != ""]
        if len(targets) == 0:
            targets = doh(current, "CNAME")
        if len(targets) == 0:
            break
        target = targets[0]
        if target in chain:
            logging.debug(f"CNAME loop detected at {target} while resolving {name}")
            break
        chain.append(target)
        current = target

    with ThreadPoolExecutor(max_workers=2) as executor:
        v4_future = executor.submit(_lookup, resolver, current, "A", lookup_timeout)
        v6_future = executor.submit(_lookup, resolver, current, "AAAA", lookup_timeout)
        ipv4 = _addresses(v4_future.result(), 4)
        ipv6 = _addresses(v6_future.result(), 6)
        v4_doh_future = None
        v6_doh_future = None
        if len(ipv4) == 0:
            v4_doh_future = executor.submit(doh, current, "A")
        if len(ipv6) == 0:
            v6_doh_future = executor.submit(doh, current, "AAAA")
        if v4_doh_future is not None:
            ipv4 = v4_doh_future.result()
        if v6_doh_future is not None:
            ipv6 = v6_doh_future.result()

    reverse_hostnames: list[ReverseHostnameResult] = []
    if not disable_ptr_lookups:
        for ip in ipv4 + ipv6:
            try:
                hostnames = get_reverse_dns(
                    ip, resolver=resolver, timeout=lookup_timeout, timeout_retries=0
                )
            except DNSException as e:
                logging.debug(f"PTR lookup for {ip} failed: {e}")
                continue
            hostnames = _unique(h for h in hostnames if h != "")
            if len(hostnames) > 0:
                reverse_hostnames.append({"ip": ip, "hostnames": hostnames})

    error = None
    if len(chain) == 1 and len(ipv4) == 0 and len(ipv6) == 0:
        error = NO_RECORDS_ERROR

    return {
        "name": name,
        "chain": chain,
        "terminal": current,
        "ipv4": ipv4,
        "ipv6": ipv6,
        "reverse_hostnames": reverse_hostnames,
        "error": error,
    }


def _failed_resolution(host: str, error: Exception) -> HostnameChainResult:
    return {
        "name": host,
        "chain": [host],
        "terminal": host,
        "ipv4": [],
        "ipv6": [],
        "reverse_hostnames": [],
        "error": str(error),
    }


def _chunks(values: list, size: int):
    for i in range(0, len(values), size):
        yield values[i : i + size]


def resolve_topology_batch(
    hostnames: Iterable[str],
    max_hops: Optional[int] = DEFAULT_MAX_HOPS,
    service_hosts: Optional[Iterable[str]] = None,
    resolver_mode: Optional[str] = "dns",
    dns_server: Optional[str] = None,
    custom_dns_server: Optional[str] = None,
    doh_provider: Optional[str] = None,
    doh_custom_url: Optional[str] = None,
    lookup_timeout_ms: Optional[int] = DEFAULT_LOOKUP_TIMEOUT_MS,
    disable_ptr_lookups: Optional[bool] = False,
    cache: Optional[HostResolutionCache] = None,
    *,
    resolver: Optional[dns.resolver.Resolver] = None,
    session: Optional[requests.Session] = None,
) -> TopologyBatchResult:
    """
    Resolves the hostname chains of many hosts and probes service hosts

    Hostnames and service hosts are normalized and de-duplicated, keeping
    the order they were first seen in. Fresh cached results are reused;
    the rest are resolved 16 at a time and written back to the cache as a
    single batch. Resolutions are returned in input order. Service hosts
    are probed 8 at a time and the order of probes is not guaranteed.

    Args:
        hostnames (list): Hostnames to resolve
        max_hops (int): The maximum number of CNAMEs to follow (1-15); ``None``
                        selects the default of 15
        service_hosts (list): Hosts to probe over HTTPS and HTTP
        resolver_mode (str): ``dns`` or ``doh`` (DNS with DoH fallback)
        dns_server (str): See :func:`resolve_dns_server`
        custom_dns_server (str): See :func:`resolve_dns_server`
        doh_provider (str): See :func:`resolve_dns_server`
        doh_custom_url (str): See :func:`resolve_doh_endpoints`
        lookup_timeout_ms (int): The timeout of each lookup in milliseconds
                                 (250-10000); ``None`` selects the default
                                 of 1200
        disable_ptr_lookups (bool): Skip reverse DNS lookups
        cache (HostResolutionCache): A cache shared between batches
        resolver (dns.resolver.Resolver): Overrides the resolver built from
                                          the server settings
        session (requests.Session): The HTTP session for DoH and probes

    Returns:
        dict: A ``dict`` with ``resolutions`` and ``probes`` lists

    Raises:
        :exc:`zoneaudit.topology.TopologyConfigError`
    """
    resolver_mode = (resolver_mode or "dns").strip().lower()
    if resolver_mode not in RESOLVER_MODES:
        raise TopologyConfigError(
            f"Unknown resolver mode {resolver_mode}; "
            f"expected one of {', '.join(RESOLVER_MODES)}"
        )
    if max_hops is None:
        max_hops = DEFAULT_MAX_HOPS
    if lookup_timeout_ms is None:
        lookup_timeout_ms = DEFAULT_LOOKUP_TIMEOUT_MS
    max_hops = _clamp(int(max_hops), MIN_MAX_HOPS, MAX_MAX_HOPS)
    lookup_timeout_ms = _clamp(
        int(lookup_timeout_ms), MIN_LOOKUP_TIMEOUT_MS, MAX_LOOKUP_TIMEOUT_MS
    )
    lookup_timeout = lookup_timeout_ms / 1000
    disable_ptr_lookups = bool(disable_ptr_lookups)
    selected_dns_server = resolve_dns_server(
        dns_server, custom_dns_server, doh_provider
    )
    doh_endpoints = []
    if resolver_mode == "doh":
        doh_endpoints = resolve_doh_endpoints(
            selected_dns_server, custom_dns_server, doh_custom_url, doh_provider
        )
    if resolver is None:
        resolver = build_dns_resolver(
            selected_dns_server, custom_dns_server, doh_provider
        )
    if session is None:
        session = new_http_session()
    if cache is None:
        cache = HostResolutionCache()

    def cache_key(host: str) -> HostCacheKey:
        return HostCacheKey(
            resolver_mode,
            selected_dns_server,
            (doh_provider or "cloudflare").strip().lower(),
            (doh_custom_url or "").strip(),
            max_hops,
            disable_ptr_lookups,
            host,
        )

    unique_hosts = _unique(h for h in map(normalize_domain, hostnames) if h != "")
    keys = {host: cache_key(host) for host in unique_hosts}
    hits = cache.get_many(keys.values())
    resolved = {host: hits[keys[host]] for host in unique_hosts if keys[host] in hits}
    misses = [host for host in unique_hosts if host not in resolved]
    logging.debug(
        f"Resolving {len(unique_hosts)} hosts; {len(resolved)} found in the cache"
    )

    updates = []
    for chunk in _chunks(misses, RESOLVE_CHUNK_SIZE):
        with ThreadPoolExecutor(max_workers=len(chunk)) as executor:
            futures = {
                executor.submit(
                    resolve_chain_for_host,
                    host,
                    resolver=resolver,
                    doh_endpoints=doh_endpoints,
                    session=session,
                    max_hops=max_hops,
                    lookup_timeout=lookup_timeout,
                    disable_ptr_lookups=disable_ptr_lookups,
                ): host
                for host in chunk
            }
            for future in as_completed(futures):
                host = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logging.error(f"Unexpected error resolving {host}: {e}")
                    resolved[host] = _failed_resolution(host, e)
                    continue
                resolved[host] = result
                updates.append((keys[host], result))
    if len(updates) > 0:
        cache.put_many(updates)

    resolutions = [resolved[host] for host in unique_hosts]

    probes: list[ServiceProbeResult] = []
    probe_hosts = _unique(
        h for h in map(normalize_domain, service_hosts or []) if h != ""
    )
    for chunk in _chunks(probe_hosts, PROBE_CHUNK_SIZE):
        with ThreadPoolExecutor(max_workers=len(chunk)) as executor:
            futures = {
                executor.submit(probe_service_host, host, session=session): host
                for host in chunk
            }
            for future in as_completed(futures):
                try:
                    probes.append(future.result())
                except Exception as e:
                    logging.error(f"Unexpected error probing {futures[future]}: {e}")

    return {"resolutions": resolutions, "probes": probes}
