# -*- coding: utf-8 -*-
"""Sender Policy framework (SPF) record parsing, evaluation and graphing"""

from __future__ import annotations

import ipaddress
import logging
from typing import Optional, TypedDict, Union
from collections.abc import Sequence

import dns.resolver
from dns.nameserver import Nameserver

from zoneaudit._constants import (
    SPF_GRAPH_MAX_DEPTH,
    SPF_MAX_DNS_LOOKUPS,
    SPF_MAX_RECURSION_DEPTH,
)
from zoneaudit.utils import (
    DNSException,
    DNSExceptionNXDOMAIN,
    get_a_records,
    get_mx_hostnames,
    get_reverse_dns,
    get_txt_records,
    normalize_domain,
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

SPF_VERSION_TAG = "v=spf1"
SPF_QUALIFIER_CHARACTERS = "+-~?"
SPF_KNOWN_MECHANISMS = ("all", "include", "a", "mx", "ptr", "ip4", "ip6", "exists")


class SPFError(Exception):
    """Raised when a fatal SPF error occurs"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class SPFTooManyDNSLookups(SPFError):
    """Raised when an SPF evaluation requires too many DNS lookups (10 max)"""

    def __init__(self, *args, **kwargs):
        data = {"dns_lookups": kwargs["dns_lookups"]}
        SPFError.__init__(self, args[0], data=data)


class SPFRecursionTooDeep(SPFError):
    """Raised when include/redirect evaluation nests too deeply"""


class SPFMechanism(TypedDict):
    qualifier: str
    mechanism: str
    value: Optional[str]


class SPFModifier(TypedDict):
    key: str
    value: str


class SPFRecord(TypedDict):
    version: str
    mechanisms: list[SPFMechanism]
    modifiers: list[SPFModifier]


class SPFSimulation(TypedDict):
    result: str
    reasons: list[str]
    lookups: int


class SPFGraphNode(TypedDict):
    domain: str
    txt: Optional[str]


# "from" is a keyword, so the functional syntax is required
SPFGraphEdge = TypedDict("SPFGraphEdge", {"from": str, "to": str, "edge_type": str})


class SPFGraph(TypedDict):
    nodes: list[SPFGraphNode]
    edges: list[SPFGraphEdge]
    lookups: int
    cyclic: bool


class SPFLintResults(TypedDict):
    ok: bool
    problems: list[str]


class SPFGraphCheckResults(SPFLintResults):
    graph: SPFGraph


spf_qualifiers: dict[str, str] = {
    "": "pass",
    "?": "neutral",
    "+": "pass",
    "-": "fail",
    "~": "softfail",
}


def parse_spf_record(record: Optional[str]) -> Optional[SPFRecord]:
    """
    Parses an SPF record into its mechanisms and modifiers

    Terms are split on whitespace and keep their order. A term containing
    ``=`` is a modifier; anything else is a mechanism with an optional
    qualifier prefix.

    Args:
        record (str): The raw TXT record value

    Returns:
        dict: A ``dict`` with ``version``, ``mechanisms`` and ``modifiers``
        keys, or ``None`` if the value is not an SPF record
    """
    if not record:
        return None
    record = record.strip()
    if not record.lower().startswith(SPF_VERSION_TAG):
        return None

    mechanisms: list[SPFMechanism] = []
    modifiers: list[SPFModifier] = []
    for term in record[len(SPF_VERSION_TAG) :].split():
        if "=" in term:
            key, value = term.split("=", 1)
            modifiers.append({"key": key.lower(), "value": value})
            continue
        qualifier = "+"
        if term[0] in SPF_QUALIFIER_CHARACTERS:
            qualifier = term[0]
            term = term[1:]
        name, _, value = term.partition(":")
        if "/" in name:
            # a/24 and mx/24 carry a prefix length but no domain
            name = name.split("/")[0]
        mechanisms.append(
            {"qualifier": qualifier, "mechanism": name.lower(), "value": value or None}
        )

    return {"version": SPF_VERSION_TAG, "mechanisms": mechanisms, "modifiers": modifiers}


def compose_spf_record(record: SPFRecord) -> str:
    """
    Converts a parsed SPF record back into TXT record text

    Args:
        record (dict): A record returned by :func:`parse_spf_record`

    Returns:
        str: The SPF record text
    """
    terms = []
    for mechanism in record["mechanisms"]:
        qualifier = mechanism["qualifier"]
        if qualifier == "+":
            qualifier = ""
        term = f"{qualifier}{mechanism['mechanism']}"
        if mechanism["value"]:
            term += f":{mechanism['value']}"
        terms.append(term)
    for modifier in record["modifiers"]:
        terms.append(f"{modifier['key']}={modifier['value']}")
    return " ".join([record["version"]] + terms)


def validate_spf_record(record: Optional[str]) -> SPFLintResults:
    """
    Checks an SPF record for basic problems without any DNS lookups

    Args:
        record (str): The raw TXT record value

    Returns:
        dict: A ``dict`` with an ``ok`` flag and a ``problems`` list
    """
    parsed = parse_spf_record(record)
    if parsed is None:
        return {"ok": False, "problems": [f"missing {SPF_VERSION_TAG} prefix"]}
    problems = []
    for mechanism in parsed["mechanisms"]:
        name = mechanism["mechanism"]
        if name not in SPF_KNOWN_MECHANISMS:
            problems.append(f"unknown mechanism: {name}")
        if name in ("ip4", "ip6") and not mechanism["value"]:
            problems.append(f"{name} mechanism requires a value")
        if name in ("include", "exists") and not mechanism["value"]:
            problems.append(f"{name} mechanism requires a domain/value")
    redirects = [m for m in parsed["modifiers"] if m["key"] == "redirect"]
    if len(redirects) > 1:
        problems.append("only one redirect modifier allowed")
    for redirect in redirects:
        if not redirect["value"]:
            problems.append("redirect modifier requires a domain/value")
    return {"ok": len(problems) == 0, "problems": problems}


def ip_matches_cidr(
    ip_address: Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address],
    cidr: Optional[str],
) -> bool:
    """
    Checks if an IP address is inside a network, or equal to a bare address

    IPv4-mapped IPv6 addresses are compared as IPv4.

    Args:
        ip_address: An IPv4 or IPv6 address
        cidr (str): A network in CIDR notation or a bare IP address

    Returns:
        bool: ``True`` if the address matches
    """
    if not cidr:
        return False
    if isinstance(ip_address, str):
        ip_address = ipaddress.ip_address(ip_address)
    if isinstance(ip_address, ipaddress.IPv6Address) and ip_address.ipv4_mapped:
        ip_address = ip_address.ipv4_mapped
    try:
        network = ipaddress.ip_network(cidr, strict=False)
    except ValueError:
        try:
            return ip_address == ipaddress.ip_address(cidr)
        except ValueError:
            return False
    return ip_address in network


def query_spf_record(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> Optional[str]:
    """
    Queries DNS for an SPF record

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        str: The first TXT record starting with ``v=spf1``, or ``None`` if
        there is none or the lookup failed
    """
    domain = normalize_domain(domain)
    logging.debug(f"Checking for a SPF record on {domain}")
    try:
        answers = get_txt_records(
            domain,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except DNSException as error:
        logging.debug(f"TXT lookup for {domain} failed: {error}")
        return None
    return _first_spf_record(answers)


def _first_spf_record(records: list[str]) -> Optional[str]:
    for record in records:
        if record.strip().lower().startswith(SPF_VERSION_TAG):
            return record
    return None


def _fetch_spf_record(
    domain: str, mechanism: str, notes: list[str], dns_options: dict
) -> Optional[str]:
    """Fetches the SPF record being evaluated, noting DNS failures"""
    logging.debug(f"Checking for a SPF record on {domain}")
    try:
        answers = get_txt_records(domain, **dns_options)
    except DNSExceptionNXDOMAIN:
        return None
    except DNSException as error:
        _note_dns_failure(notes, mechanism, domain, error)
        return None
    return _first_spf_record(answers)


def _count_lookup(lookups: int) -> int:
    lookups += 1
    if lookups > SPF_MAX_DNS_LOOKUPS:
        raise SPFTooManyDNSLookups(
            "Evaluating the SPF record requires more than "
            f"{SPF_MAX_DNS_LOOKUPS} DNS lookups (RFC 7208 § 4.6.4)",
            dns_lookups=lookups,
        )
    return lookups


def _get_addresses(
    name: str, mechanism: str, notes: list[str], **dns_options
) -> set[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """Resolves A/AAAA records, treating any DNS failure as an empty answer"""
    try:
        addresses = get_a_records(name, **dns_options)
    except DNSExceptionNXDOMAIN:
        return set()
    except DNSException as error:
        _note_dns_failure(notes, mechanism, name, error)
        return set()
    return set(map(ipaddress.ip_address, addresses))


def _note_dns_failure(notes: list[str], mechanism: str, name: str, error) -> None:
    message = f"{mechanism} lookup for {name} failed: {error}"
    logging.warning(message)
    notes.append(message)


def _evaluate_mechanism(
    mechanism: SPFMechanism,
    domain: str,
    ip_address: Union[ipaddress.IPv4Address, ipaddress.IPv6Address],
    *,
    lookups: int,
    depth: int,
    notes: list[str],
    dns_options: dict,
) -> tuple[bool, int]:
    """
    Evaluates one mechanism

    Returns:
        tuple: ``(matched, lookups)`` where ``lookups`` is the updated count
    """
    name = mechanism["mechanism"]
    value = mechanism["value"]

    if name in ("ip4", "ip6"):
        return ip_matches_cidr(ip_address, value), lookups
    elif name == "all":
        return True, lookups
    elif name == "a":
        lookups = _count_lookup(lookups)
        target = (value or domain).split("/")[0]
        return ip_address in _get_addresses(target, name, notes, **dns_options), lookups
    elif name == "mx":
        lookups = _count_lookup(lookups)
        target = (value or domain).split("/")[0]
        try:
            hosts = get_mx_hostnames(target, **dns_options)
        except DNSExceptionNXDOMAIN:
            hosts = []
        except DNSException as error:
            _note_dns_failure(notes, name, target, error)
            hosts = []
        for host in hosts:
            if ip_address in _get_addresses(host, name, notes, **dns_options):
                return True, lookups
        return False, lookups
    elif name == "ptr":
        lookups = _count_lookup(lookups)
        suffix = (value or domain).lower()
        try:
            hostnames = get_reverse_dns(str(ip_address), **dns_options)
        except DNSException as error:
            _note_dns_failure(notes, name, str(ip_address), error)
            hostnames = []
        for hostname in hostnames:
            if not hostname.lower().endswith(suffix):
                continue
            if ip_address in _get_addresses(hostname, name, notes, **dns_options):
                return True, lookups
        return False, lookups
    elif name == "include":
        lookups = _count_lookup(lookups)
        if not value:
            return False, lookups
        included = _evaluate_spf(
            normalize_domain(value),
            ip_address,
            source="include",
            lookups=lookups,
            depth=depth + 1,
            dns_options=dns_options,
        )
        # Everything but the final verdict reason is a DNS failure note
        notes.extend(included["reasons"][:-1])
        return included["result"] == "pass", included["lookups"]
    elif name == "exists":
        lookups = _count_lookup(lookups)
        if not value:
            return False, lookups
        return len(_get_addresses(value, name, notes, **dns_options)) > 0, lookups

    logging.debug(f"Ignoring unknown SPF mechanism {name} on {domain}")
    return False, lookups


def _evaluate_spf(
    domain: str,
    ip_address: Union[ipaddress.IPv4Address, ipaddress.IPv6Address],
    *,
    source: str = "spf",
    lookups: int,
    depth: int,
    dns_options: dict,
) -> SPFSimulation:
    if depth > SPF_MAX_RECURSION_DEPTH:
        raise SPFRecursionTooDeep(
            f"SPF include/redirect nesting exceeds {SPF_MAX_RECURSION_DEPTH} levels",
            data={"dns_lookups": lookups},
        )
    logging.debug(f"Evaluating the SPF record on {domain} for {ip_address}")
    lookups += 1
    notes: list[str] = []
    record = parse_spf_record(
        _fetch_spf_record(domain, source, notes, dns_options)
    )
    if record is None:
        return {
            "result": "neutral",
            "reasons": notes + ["no spf record"],
            "lookups": lookups,
        }

    for mechanism in record["mechanisms"]:
        matched, lookups = _evaluate_mechanism(
            mechanism,
            domain,
            ip_address,
            lookups=lookups,
            depth=depth,
            notes=notes,
            dns_options=dns_options,
        )
        if matched:
            return {
                "result": spf_qualifiers.get(mechanism["qualifier"], "pass"),
                "reasons": notes + [f"matched mechanism {mechanism['mechanism']}"],
                "lookups": lookups,
            }

    for modifier in record["modifiers"]:
        if modifier["key"] == "redirect" and modifier["value"]:
            redirected = _evaluate_spf(
                normalize_domain(modifier["value"]),
                ip_address,
                source="redirect",
                lookups=lookups,
                depth=depth + 1,
                dns_options=dns_options,
            )
            return {
                "result": redirected["result"],
                "reasons": notes + redirected["reasons"],
                "lookups": redirected["lookups"],
            }

    return {
        "result": "neutral",
        "reasons": notes + ["no matching mechanism"],
        "lookups": lookups,
    }


def simulate_spf(
    domain: str,
    ip_address: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> SPFSimulation:
    """
    Simulates the SPF check a receiving mail server would make for mail sent
    from the given IP address on behalf of the given domain

    Mechanisms are evaluated left to right and the first match decides the
    result. One DNS lookup count is shared by the whole evaluation, including
    nested ``include`` and ``redirect`` evaluations. DNS failures while
    evaluating a mechanism are treated as empty answers and noted in the
    reasons.

    Args:
        domain (str): A domain name
        ip_address (str): The IPv4 or IPv6 address of the sender
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: A ``dict`` with the following keys:
            - ``result`` - ``pass``, ``fail``, ``softfail``, ``neutral`` or
              ``permerror``
            - ``reasons`` - A ``list`` of reasons
            - ``lookups`` - The number of DNS lookups made

    Raises:
        :exc:`zoneaudit.spf.SPFError`
    """
    try:
        candidate = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        raise SPFError(f"{ip_address} is not a valid IP address")
    dns_options = dict(
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    try:
        return _evaluate_spf(
            normalize_domain(domain),
            candidate,
            lookups=0,
            depth=0,
            dns_options=dns_options,
        )
    except SPFTooManyDNSLookups as error:
        logging.debug(str(error))
        return {
            "result": "permerror",
            "reasons": ["lookup limit reached"],
            "lookups": error.data["dns_lookups"],
        }
    except SPFRecursionTooDeep as error:
        logging.debug(str(error))
        return {
            "result": "permerror",
            "reasons": ["recursion depth exceeded"],
            "lookups": error.data["dns_lookups"],
        }


def _build_spf_graph(
    domain: str,
    *,
    root_record: Optional[str],
    dns_options: dict,
) -> SPFGraph:
    graph: SPFGraph = {"nodes": [], "edges": [], "lookups": 0, "cyclic": False}
    visited: set[str] = set()

    def walk(name: str, depth: int):
        if depth > SPF_GRAPH_MAX_DEPTH:
            return
        if name in visited:
            graph["cyclic"] = True
            return
        visited.add(name)
        if depth == 0 and root_record is not None:
            txt = root_record
        else:
            graph["lookups"] += 1
            txt = query_spf_record(name, **dns_options)
        graph["nodes"].append({"domain": name, "txt": txt})
        record = parse_spf_record(txt)
        if record is None:
            return
        for mechanism in record["mechanisms"]:
            if mechanism["mechanism"] == "include" and mechanism["value"]:
                target = normalize_domain(mechanism["value"])
                graph["edges"].append({"from": name, "to": target, "edge_type": "include"})
                walk(target, depth + 1)
        for modifier in record["modifiers"]:
            if modifier["key"] == "redirect" and modifier["value"]:
                target = normalize_domain(modifier["value"])
                graph["edges"].append(
                    {"from": name, "to": target, "edge_type": "redirect"}
                )
                walk(target, depth + 1)

    walk(domain, 0)
    return graph


def spf_graph(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> SPFGraph:
    """
    Builds the graph of ``include`` and ``redirect`` edges of an SPF record

    The walk is depth-first and visits each domain once; reaching a domain
    a second time marks the graph as cyclic instead of descending again.

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: A ``dict`` with the following keys:
            - ``nodes`` - A ``list`` of ``domain``/``txt`` dicts
            - ``edges`` - A ``list`` of ``from``/``to``/``edge_type`` dicts
            - ``lookups`` - The number of TXT lookups made
            - ``cyclic`` - ``True`` if a domain was reached more than once
    """
    return _build_spf_graph(
        normalize_domain(domain),
        root_record=None,
        dns_options=dict(
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        ),
    )


def spf_graph_from_record(
    domain: str,
    record: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> SPFGraph:
    """
    Builds an SPF graph using the given record for the root domain instead
    of the published one, e.g. to preview an edited record

    Args:
        domain (str): The domain the record is for
        record (str): The SPF record text
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: See :func:`spf_graph`
    """
    return _build_spf_graph(
        normalize_domain(domain),
        root_record=record,
        dns_options=dict(
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        ),
    )


def _graph_problems(graph: SPFGraph, max_lookups: int, subject: str) -> list[str]:
    problems = []
    if graph["lookups"] > max_lookups:
        problems.append(
            f"SPF {subject} would require {graph['lookups']} DNS lookups "
            f"which exceeds the {max_lookups} limit"
        )
    if graph["cyclic"]:
        problems.append("SPF include/redirect graph contains a cycle")
    return problems


def check_spf_graph(
    domain: str,
    *,
    max_lookups: int = SPF_MAX_DNS_LOOKUPS,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> SPFGraphCheckResults:
    """
    Builds the SPF graph of a domain and reports problems with it

    Args:
        domain (str): A domain name
        max_lookups (int): The maximum number of allowed lookups
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: A ``dict`` with ``ok``, ``problems`` and ``graph`` keys
    """
    domain = normalize_domain(domain)
    dns_options = dict(
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    graph = _build_spf_graph(domain, root_record=None, dns_options=dns_options)
    problems = _graph_problems(graph, max_lookups, "record")
    try:
        records = get_txt_records(domain, **dns_options)
        spf_records = [
            r for r in records if r.strip().lower().startswith(SPF_VERSION_TAG)
        ]
        if len(spf_records) > 1:
            problems.append(
                "Multiple SPF TXT records found for domain; only one is allowed"
            )
    except DNSException as error:
        logging.debug(f"Unable to count SPF records on {domain}: {error}")
    return {"ok": len(problems) == 0, "problems": problems, "graph": graph}


def check_spf_graph_record(
    domain: str,
    record: str,
    *,
    max_lookups: int = SPF_MAX_DNS_LOOKUPS,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> SPFGraphCheckResults:
    """
    Reports problems with the SPF graph an unpublished record would produce

    Args:
        domain (str): The domain the record is for
        record (str): The SPF record text
        max_lookups (int): The maximum number of allowed lookups
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: A ``dict`` with ``ok``, ``problems`` and ``graph`` keys
    """
    graph = spf_graph_from_record(
        domain,
        record,
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    problems = _graph_problems(graph, max_lookups, "content")
    return {"ok": len(problems) == 0, "problems": problems, "graph": graph}
