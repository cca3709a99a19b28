#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Audits SPF mail policy and DNS hostname topology"""

from __future__ import annotations

import os
import sys
from argparse import ArgumentParser

import logging

from zoneaudit import (
    __version__,
    SPFError,
    TopologyConfigError,
    check_spf_graph,
    output_to_file,
    resolve_topology_batch,
    results_to_json,
    simulate_spf,
)
from zoneaudit._constants import DEFAULT_LOOKUP_TIMEOUT_MS, DEFAULT_MAX_HOPS

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


def _read_hosts(hosts: list[str]) -> list[str]:
    if len(hosts) == 1 and os.path.exists(hosts[0]):
        with open(hosts[0]) as hosts_file:
            return [
                line.strip().split(",")[0]
                for line in hosts_file.readlines()
                if line.strip() != ""
            ]
    return hosts


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument(
        "-o",
        "--output",
        nargs="+",
        help="one or more JSON file paths to output to (silences screen output)",
    )
    arg_parser.add_argument(
        "-n", "--nameserver", nargs="+", help="nameservers to query for SPF"
    )
    arg_parser.add_argument(
        "-t",
        "--timeout",
        help="number of seconds to wait for an answer from DNS (default 2.0)",
        type=float,
        default=2.0,
    )
    arg_parser.add_argument(
        "--timeout-retries",
        help="number of times to reattempt a query after a timeout (default 2)",
        type=int,
        default=2,
    )
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )
    subparsers = arg_parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser(
        "simulate", help="simulate the SPF check of a sending IP address"
    )
    simulate_parser.add_argument("domain", help="the sending domain")
    simulate_parser.add_argument("ip", help="the sending IP address")

    graph_parser = subparsers.add_parser(
        "graph", help="show and check the SPF include/redirect graph of a domain"
    )
    graph_parser.add_argument("domain", help="the domain to graph")

    topology_parser = subparsers.add_parser(
        "topology", help="resolve hostname CNAME chains and addresses"
    )
    topology_parser.add_argument(
        "host",
        nargs="+",
        help="one or more hostnames, or a single path to a "
        "file containing a list of hostnames",
    )
    topology_parser.add_argument(
        "--max-hops",
        type=int,
        default=DEFAULT_MAX_HOPS,
        help=f"maximum number of CNAMEs to follow (default {DEFAULT_MAX_HOPS})",
    )
    topology_parser.add_argument(
        "--probe", nargs="+", help="service hosts to probe over HTTPS and HTTP"
    )
    topology_parser.add_argument(
        "--mode",
        default="dns",
        choices=["dns", "doh"],
        help="resolve with DNS only, or with DNS over HTTPS fallback",
    )
    topology_parser.add_argument(
        "--dns-server", help="DNS server IP, custom, or __legacy__ (default 1.1.1.1)"
    )
    topology_parser.add_argument(
        "--custom-dns-server", help="DNS server to use with --dns-server custom"
    )
    topology_parser.add_argument(
        "--doh-provider", help="cloudflare, google or quad9"
    )
    topology_parser.add_argument("--doh-custom-url", help="a custom DoH endpoint")
    topology_parser.add_argument(
        "--lookup-timeout-ms",
        type=int,
        default=DEFAULT_LOOKUP_TIMEOUT_MS,
        help="timeout of each lookup in milliseconds "
        f"(default {DEFAULT_LOOKUP_TIMEOUT_MS})",
    )
    topology_parser.add_argument(
        "--no-ptr", action="store_true", help="skip reverse DNS lookups"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")

    dns_options = dict(
        nameservers=args.nameserver,
        timeout=args.timeout,
        timeout_retries=args.timeout_retries,
    )
    try:
        if args.command == "simulate":
            results = simulate_spf(args.domain, args.ip, **dns_options)
        elif args.command == "graph":
            results = check_spf_graph(args.domain, **dns_options)
        else:
            results = resolve_topology_batch(
                _read_hosts(args.host),
                max_hops=args.max_hops,
                service_hosts=args.probe,
                resolver_mode=args.mode,
                dns_server=args.dns_server,
                custom_dns_server=args.custom_dns_server,
                doh_provider=args.doh_provider,
                doh_custom_url=args.doh_custom_url,
                lookup_timeout_ms=args.lookup_timeout_ms,
                disable_ptr_lookups=args.no_ptr,
            )
    except (SPFError, TopologyConfigError) as e:
        logging.error(str(e))
        sys.exit(1)

    if args.output is None:
        print(results_to_json(results))
    else:
        for path in args.output:
            if not path.lower().endswith(".json"):
                logging.error(f"Output path {path} must end in .json")
            else:
                output_to_file(path, results_to_json(results))


if __name__ == "__main__":
    _main()
