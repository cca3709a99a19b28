# -*- coding: utf-8 -*-

"""Audits SPF mail policy and DNS hostname topology"""

from __future__ import annotations

import json
from typing import Union

import zoneaudit._constants
from zoneaudit.cache import HostCacheKey, HostResolutionCache
from zoneaudit.probe import ServiceProbeResult, probe_service_host, probe_url
from zoneaudit.spf import (
    SPFError,
    SPFGraph,
    SPFRecord,
    SPFRecursionTooDeep,
    SPFSimulation,
    SPFTooManyDNSLookups,
    check_spf_graph,
    check_spf_graph_record,
    compose_spf_record,
    ip_matches_cidr,
    parse_spf_record,
    query_spf_record,
    simulate_spf,
    spf_graph,
    spf_graph_from_record,
    validate_spf_record,
)
from zoneaudit.topology import (
    HostnameChainResult,
    TopologyBatchResult,
    TopologyConfigError,
    build_dns_resolver,
    resolve_chain_for_host,
    resolve_dns_server,
    resolve_doh_endpoints,
    resolve_topology_batch,
)
from zoneaudit.utils import DNSException, DNSExceptionNXDOMAIN, normalize_domain

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


__version__ = zoneaudit._constants.__version__

__all__ = [
    "__version__",
    "DNSException",
    "DNSExceptionNXDOMAIN",
    "HostCacheKey",
    "HostResolutionCache",
    "HostnameChainResult",
    "SPFError",
    "SPFGraph",
    "SPFRecord",
    "SPFRecursionTooDeep",
    "SPFSimulation",
    "SPFTooManyDNSLookups",
    "ServiceProbeResult",
    "TopologyBatchResult",
    "TopologyConfigError",
    "build_dns_resolver",
    "check_spf_graph",
    "check_spf_graph_record",
    "compose_spf_record",
    "ip_matches_cidr",
    "normalize_domain",
    "output_to_file",
    "parse_spf_record",
    "probe_service_host",
    "probe_url",
    "query_spf_record",
    "resolve_chain_for_host",
    "resolve_dns_server",
    "resolve_doh_endpoints",
    "resolve_topology_batch",
    "results_to_json",
    "simulate_spf",
    "spf_graph",
    "spf_graph_from_record",
    "validate_spf_record",
]


def results_to_json(
    results: Union[dict[str, object], list[dict[str, object]]],
) -> str:
    """
    Converts a dictionary of results or list of results to a JSON string

    Args:
        results (dict): A dictionary of results

    Returns:
        str: Results in JSON format
    """
    return json.dumps(results, ensure_ascii=False, indent=2)


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON text
    """
    with open(
        path, "w", newline="\n", encoding="utf-8", errors="ignore"
    ) as output_file:
        output_file.write(content)
