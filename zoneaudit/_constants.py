# -*- coding: utf-8 -*-
"""Constant values"""

from __future__ import annotations
import platform
import os

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

__version__ = "1.0.0"

OS = platform.system()
OS_RELEASE = platform.release()
USER_AGENT = f"Mozilla/5.0 (({OS} {OS_RELEASE})) zoneaudit/{__version__}"

# RFC 7208 § 4.6.4
SPF_MAX_DNS_LOOKUPS = 10
SPF_MAX_RECURSION_DEPTH = 10
SPF_GRAPH_MAX_DEPTH = 10

DEFAULT_DNS_SERVER = "1.1.1.1"
DEFAULT_DNS_TIMEOUT = 2.0
DEFAULT_MAX_HOPS = 15
MIN_MAX_HOPS = 1
MAX_MAX_HOPS = 15
DEFAULT_LOOKUP_TIMEOUT_MS = 1200
MIN_LOOKUP_TIMEOUT_MS = 250
MAX_LOOKUP_TIMEOUT_MS = 10000

RESOLVE_CHUNK_SIZE = 16
PROBE_CHUNK_SIZE = 8
DOH_MAX_PARALLEL = 3

PROBE_TIMEOUT = 5.0
HTTP_CONNECT_TIMEOUT = 3.0
HTTP_MAX_REDIRECTS = 4

CLOUDFLARE_DOH_URL = "https://cloudflare-dns.com/dns-query"
GOOGLE_DOH_URL = "https://dns.google/resolve"
QUAD9_DOH_URL = "https://dns.quad9.net:5053/dns-query"

DEFAULT_DOH_ENDPOINTS = [CLOUDFLARE_DOH_URL, GOOGLE_DOH_URL, QUAD9_DOH_URL]

DNS_SERVER_DOH_ENDPOINTS = {
    "1.1.1.1": CLOUDFLARE_DOH_URL,
    "1.0.0.1": CLOUDFLARE_DOH_URL,
    "8.8.8.8": GOOGLE_DOH_URL,
    "8.8.4.4": GOOGLE_DOH_URL,
    "9.9.9.9": QUAD9_DOH_URL,
    "149.112.112.112": QUAD9_DOH_URL,
}

DOH_PROVIDER_DNS_SERVERS = {
    "cloudflare": "1.1.1.1",
    "google": "8.8.8.8",
    "quad9": "9.9.9.9",
}

TOPOLOGY_CACHE_MAX_LEN = 6000
TOPOLOGY_CACHE_MAX_AGE_SECONDS = 300

env = os.environ

if "TOPOLOGY_CACHE_MAX_LEN" in env:
    TOPOLOGY_CACHE_MAX_LEN = int(env["TOPOLOGY_CACHE_MAX_LEN"])
if "TOPOLOGY_CACHE_MAX_AGE_SECONDS" in env:
    TOPOLOGY_CACHE_MAX_AGE_SECONDS = int(env["TOPOLOGY_CACHE_MAX_AGE_SECONDS"])
