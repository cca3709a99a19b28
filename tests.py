#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import io
import os
import threading
import unittest
from unittest import mock

import dns.resolver
import dns.reversename
import requests

import zoneaudit
import zoneaudit.cache
import zoneaudit.doh
import zoneaudit.probe
import zoneaudit.spf
import zoneaudit.topology
import zoneaudit.utils
from zoneaudit import _cli


def ptr_name(ip_address):
    return dns.reversename.from_address(ip_address).to_text().rstrip(".")


class FakeRdata(object):
    def __init__(self, text):
        self.text = text
        self.strings = (text.encode(),)

    def to_text(self):
        return self.text


class FakeResolver(object):
    """Answers queries from a dict of name -> record type -> answers"""

    def __init__(self, zone):
        self.zone = zone
        self.queries = []
        self._lock = threading.Lock()

    def resolve(self, name, record_type, lifetime=None):
        with self._lock:
            self.queries.append((name, record_type))
        if name not in self.zone:
            raise dns.resolver.NXDOMAIN()
        answer = self.zone[name].get(record_type)
        if isinstance(answer, Exception):
            raise answer
        if not answer:
            raise dns.resolver.NoAnswer()
        return [FakeRdata(value) for value in answer]

    def queried(self, name, record_type):
        return self.queries.count((name, record_type))


def spf_zone(records):
    return {name: {"TXT": [txt]} for name, txt in records.items()}


class Test(unittest.TestCase):
    def testNormalizeDomain(self):
        """Domains are trimmed, lowered and stripped of the root dot"""
        self.assertEqual(
            zoneaudit.utils.normalize_domain("  WWW.Example.COM. "), "www.example.com"
        )
        self.assertEqual(
            zoneaudit.utils.normalize_domain("exa\u200bmple.com"), "example.com"
        )
        self.assertEqual(zoneaudit.utils.normalize_domain(" . "), "")

    def testGetMXHostnames(self):
        """MX hosts are sorted by preference and null MX records are skipped"""
        resolver = FakeResolver(
            {
                "example.com": {
                    "MX": ["20 b.example.com.", "10 Mail.Example.com.", "0 ."]
                }
            }
        )
        self.assertEqual(
            zoneaudit.utils.get_mx_hostnames("example.com", resolver=resolver),
            ["mail.example.com", "b.example.com"],
        )

    def testQueryDNSTimeoutRetries(self):
        """Timed out queries are retried before the timeout is raised"""
        resolver = FakeResolver(
            {
                "slow.example": {
                    "A": dns.resolver.LifetimeTimeout(timeout=1.0, errors=[])
                }
            }
        )
        with self.assertRaises(dns.resolver.LifetimeTimeout):
            zoneaudit.utils.query_dns(
                "slow.example", "A", resolver=resolver, timeout_retries=2
            )
        self.assertEqual(resolver.queried("slow.example", "A"), 3)
        with self.assertRaises(zoneaudit.utils.DNSException):
            zoneaudit.utils.get_a_records(
                "slow.example", resolver=resolver, timeout_retries=0
            )
        self.assertEqual(resolver.queried("slow.example", "A"), 4)

    def testParseSPFRecord(self):
        """SPF terms are split into ordered mechanisms and modifiers"""
        record = zoneaudit.spf.parse_spf_record(
            "v=spf1 ip4:192.0.2.0/24 -Include:_spf.Example.com ~all "
            "Redirect=_spf.example.net"
        )
        self.assertEqual(record["version"], "v=spf1")
        self.assertEqual(
            record["mechanisms"],
            [
                {"qualifier": "+", "mechanism": "ip4", "value": "192.0.2.0/24"},
                {
                    "qualifier": "-",
                    "mechanism": "include",
                    "value": "_spf.Example.com",
                },
                {"qualifier": "~", "mechanism": "all", "value": None},
            ],
        )
        self.assertEqual(
            record["modifiers"], [{"key": "redirect", "value": "_spf.example.net"}]
        )

    def testUppercaseSPFVersion(self):
        """The version tag is matched case-insensitively"""
        record = zoneaudit.spf.parse_spf_record("  V=SPF1 MX -ALL")
        self.assertEqual(record["mechanisms"][0]["mechanism"], "mx")
        self.assertEqual(record["mechanisms"][1]["qualifier"], "-")
        record = zoneaudit.spf.parse_spf_record("v=spf1 a/24 mx:example.com/28 -all")
        self.assertEqual(record["mechanisms"][0]["mechanism"], "a")
        self.assertEqual(record["mechanisms"][1]["value"], "example.com/28")

    def testParseNonSPFRecord(self):
        """Records without the SPF version tag are not parsed"""
        self.assertIsNone(zoneaudit.spf.parse_spf_record("google-site-verification=x"))
        self.assertIsNone(zoneaudit.spf.parse_spf_record(""))
        self.assertIsNone(zoneaudit.spf.parse_spf_record(None))

    def testComposeSPFRecord(self):
        """A parsed record is converted back to text with implicit + qualifiers"""
        record = zoneaudit.spf.parse_spf_record(
            "v=spf1 +mx ip4:192.0.2.1 ?include:_spf.example.com -all "
            "redirect=example.net"
        )
        self.assertEqual(
            zoneaudit.spf.compose_spf_record(record),
            "v=spf1 mx ip4:192.0.2.1 ?include:_spf.example.com -all "
            "redirect=example.net",
        )

    def testValidateSPFRecord(self):
        """Basic problems are reported without DNS lookups"""
        results = zoneaudit.spf.validate_spf_record("v=spf1 ip4:192.0.2.1 -all")
        self.assertTrue(results["ok"])
        self.assertEqual(results["problems"], [])

        results = zoneaudit.spf.validate_spf_record(
            "v=spf1 ip4 include foo:bar redirect=a.example redirect=b.example"
        )
        self.assertFalse(results["ok"])
        self.assertIn("ip4 mechanism requires a value", results["problems"])
        self.assertIn("include mechanism requires a domain/value", results["problems"])
        self.assertIn("unknown mechanism: foo", results["problems"])
        self.assertIn("only one redirect modifier allowed", results["problems"])

        results = zoneaudit.spf.validate_spf_record("ip4:192.0.2.1 -all")
        self.assertEqual(results["problems"], ["missing v=spf1 prefix"])

    def testIPMatchesCIDR(self):
        """Networks, bare addresses and IPv4-mapped IPv6 addresses match"""
        self.assertTrue(zoneaudit.spf.ip_matches_cidr("203.0.113.5", "203.0.113.0/24"))
        self.assertFalse(
            zoneaudit.spf.ip_matches_cidr("198.51.100.1", "203.0.113.0/24")
        )
        self.assertTrue(
            zoneaudit.spf.ip_matches_cidr("::ffff:203.0.113.5", "203.0.113.0/24")
        )
        self.assertTrue(zoneaudit.spf.ip_matches_cidr("2001:db8::1", "2001:db8::/32"))
        self.assertTrue(zoneaudit.spf.ip_matches_cidr("192.0.2.1", "192.0.2.1"))
        self.assertFalse(zoneaudit.spf.ip_matches_cidr("192.0.2.1", "not-an-ip"))
        self.assertFalse(zoneaudit.spf.ip_matches_cidr("192.0.2.1", None))

    def testSPFFailAll(self):
        """-all fails every address using only the TXT lookup"""
        resolver = FakeResolver(spf_zone({"example.com": "v=spf1 -all"}))
        for ip in ["192.0.2.1", "2001:db8::1"]:
            results = zoneaudit.spf.simulate_spf("example.com", ip, resolver=resolver)
            self.assertEqual(results["result"], "fail")
            self.assertEqual(results["lookups"], 1)
            self.assertEqual(results["reasons"], ["matched mechanism all"])

    def testSPFIP4Range(self):
        """ip4 mechanisms match addresses inside the network"""
        resolver = FakeResolver(
            spf_zone({"example.com": "v=spf1 ip4:203.0.113.0/24 -all"})
        )
        results = zoneaudit.spf.simulate_spf(
            "example.com", "203.0.113.5", resolver=resolver
        )
        self.assertEqual(results["result"], "pass")
        self.assertEqual(results["reasons"], ["matched mechanism ip4"])
        results = zoneaudit.spf.simulate_spf(
            "example.com", "198.51.100.1", resolver=resolver
        )
        self.assertEqual(results["result"], "fail")

    def testSPFNoRecord(self):
        """A domain without an SPF record is neutral"""
        resolver = FakeResolver({"example.com": {"TXT": ["some other text"]}})
        results = zoneaudit.spf.simulate_spf(
            "example.com", "192.0.2.1", resolver=resolver
        )
        self.assertEqual(
            results, {"result": "neutral", "reasons": ["no spf record"], "lookups": 1}
        )
        results = zoneaudit.spf.simulate_spf(
            "missing.example", "192.0.2.1", resolver=resolver
        )
        self.assertEqual(results["result"], "neutral")

    def testSPFNoMatchingMechanism(self):
        resolver = FakeResolver(spf_zone({"example.com": "v=spf1 ip4:192.0.2.1"}))
        results = zoneaudit.spf.simulate_spf(
            "example.com", "192.0.2.2", resolver=resolver
        )
        self.assertEqual(results["result"], "neutral")
        self.assertEqual(results["reasons"], ["no matching mechanism"])

    def testSPFInvalidIPAddress(self):
        """An invalid candidate IP address raises an error"""
        resolver = FakeResolver(spf_zone({"example.com": "v=spf1 -all"}))
        with self.assertRaises(zoneaudit.spf.SPFError):
            zoneaudit.spf.simulate_spf("example.com", "999.1.1.1", resolver=resolver)

    def testSPFInclude(self):
        """Included records match only when they pass"""
        resolver = FakeResolver(
            spf_zone(
                {
                    "example.com": "v=spf1 include:_spf.provider.test ~all",
                    "_spf.provider.test": "v=spf1 ip4:192.0.2.0/24 -all",
                }
            )
        )
        results = zoneaudit.spf.simulate_spf(
            "example.com", "192.0.2.10", resolver=resolver
        )
        self.assertEqual(results["result"], "pass")
        self.assertEqual(results["reasons"], ["matched mechanism include"])
        self.assertEqual(results["lookups"], 3)

        results = zoneaudit.spf.simulate_spf(
            "example.com", "198.51.100.1", resolver=resolver
        )
        self.assertEqual(results["result"], "softfail")
        self.assertEqual(results["lookups"], 3)

    def testSPFRedirect(self):
        """A redirect is followed when no mechanism matches"""
        resolver = FakeResolver(
            spf_zone(
                {
                    "example.com": "v=spf1 ip4:192.0.2.1 redirect=other.test",
                    "other.test": "v=spf1 ~all",
                }
            )
        )
        results = zoneaudit.spf.simulate_spf(
            "example.com", "198.51.100.1", resolver=resolver
        )
        self.assertEqual(results["result"], "softfail")
        self.assertEqual(results["reasons"], ["matched mechanism all"])
        self.assertEqual(results["lookups"], 2)

    def testSPFAMechanism(self):
        resolver = FakeResolver(
            {
                "example.com": {
                    "TXT": ["v=spf1 a a:mail.example.com/24 -all"],
                    "A": ["192.0.2.1"],
                },
                "mail.example.com": {"AAAA": ["2001:db8::25"]},
            }
        )
        results = zoneaudit.spf.simulate_spf(
            "example.com", "2001:db8::25", resolver=resolver
        )
        self.assertEqual(results["result"], "pass")
        self.assertEqual(results["lookups"], 3)

    def testSPFMXMechanism(self):
        """mx mechanisms match the addresses of the mail exchanges"""
        resolver = FakeResolver(
            {
                "example.com": {
                    "TXT": ["v=spf1 mx -all"],
                    "MX": ["20 backup.example.com.", "10 mail.example.com."],
                },
                "mail.example.com": {"A": ["192.0.2.25"]},
                "backup.example.com": {"A": ["192.0.2.26"]},
            }
        )
        results = zoneaudit.spf.simulate_spf(
            "example.com", "192.0.2.26", resolver=resolver
        )
        self.assertEqual(results["result"], "pass")
        self.assertEqual(results["lookups"], 2)

    def testSPFPTRMechanism(self):
        """ptr mechanisms verify reverse names inside the domain"""
        resolver = FakeResolver(
            {
                "example.com": {"TXT": ["v=spf1 ptr -all"]},
                ptr_name("192.0.2.7"): {"PTR": ["host.example.com."]},
                ptr_name("192.0.2.8"): {"PTR": ["host.example.net."]},
                "host.example.com": {"A": ["192.0.2.7"]},
                "host.example.net": {"A": ["192.0.2.8"]},
            }
        )
        results = zoneaudit.spf.simulate_spf(
            "example.com", "192.0.2.7", resolver=resolver
        )
        self.assertEqual(results["result"], "pass")
        results = zoneaudit.spf.simulate_spf(
            "example.com", "192.0.2.8", resolver=resolver
        )
        self.assertEqual(results["result"], "fail")

    def testSPFExistsMechanism(self):
        resolver = FakeResolver(
            {
                "example.com": {"TXT": ["v=spf1 exists:allowed.example.com -all"]},
                "allowed.example.com": {"A": ["127.0.0.2"]},
            }
        )
        results = zoneaudit.spf.simulate_spf(
            "example.com", "198.51.100.1", resolver=resolver
        )
        self.assertEqual(results["result"], "pass")
        self.assertEqual(results["reasons"], ["matched mechanism exists"])

    def testTooManySPFDNSLookups(self):
        """Evaluation stops with permerror once the lookup limit is exceeded"""
        mechanisms = " ".join(f"a:h{i}.example.com" for i in range(1, 13))
        resolver = FakeResolver(spf_zone({"example.com": f"v=spf1 {mechanisms} -all"}))
        results = zoneaudit.spf.simulate_spf(
            "example.com", "192.0.2.1", resolver=resolver
        )
        self.assertEqual(results["result"], "permerror")
        self.assertEqual(results["reasons"], ["lookup limit reached"])
        self.assertEqual(results["lookups"], 11)
        self.assertEqual(resolver.queried("h9.example.com", "A"), 1)
        self.assertEqual(resolver.queried("h10.example.com", "A"), 0)
        self.assertEqual(resolver.queried("h12.example.com", "A"), 0)

    def testTooManyNestedSPFDNSLookups(self):
        """Lookups made by included records count toward the limit"""
        mechanisms = " ".join(f"a:h{i}.example.com" for i in range(1, 9))
        resolver = FakeResolver(
            spf_zone(
                {
                    "example.com": "v=spf1 include:one.example.com -all",
                    "one.example.com": f"v=spf1 {mechanisms} ~all",
                }
            )
        )
        results = zoneaudit.spf.simulate_spf(
            "example.com", "192.0.2.1", resolver=resolver
        )
        self.assertEqual(results["result"], "permerror")
        self.assertEqual(resolver.queried("h8.example.com", "A"), 0)

    def testSPFRecursionTooDeep(self):
        """Deeply nested redirects end with permerror"""
        records = {f"r{i}.test": f"v=spf1 redirect=r{i + 1}.test" for i in range(20)}
        resolver = FakeResolver(spf_zone(records))
        results = zoneaudit.spf.simulate_spf("r0.test", "192.0.2.1", resolver=resolver)
        self.assertEqual(results["result"], "permerror")
        self.assertEqual(results["reasons"], ["recursion depth exceeded"])

    def testSPFDNSFailureIsNoted(self):
        """DNS failures inside a mechanism count as no match and are noted"""
        resolver = FakeResolver(
            {
                "example.com": {"TXT": ["v=spf1 a:broken.example.com -all"]},
                "broken.example.com": {"A": dns.resolver.NoNameservers()},
            }
        )
        with self.assertLogs(level="WARNING"):
            results = zoneaudit.spf.simulate_spf(
                "example.com", "192.0.2.1", resolver=resolver
            )
        self.assertEqual(results["result"], "fail")
        self.assertEqual(len(results["reasons"]), 2)
        self.assertTrue(
            results["reasons"][0].startswith("a lookup for broken.example.com failed")
        )
        self.assertEqual(results["reasons"][-1], "matched mechanism all")

    def testSPFIncludeDNSFailureIsNoted(self):
        """A failed TXT lookup on an include target is noted, not hidden"""
        resolver = FakeResolver(
            {
                "a.example": {"TXT": ["v=spf1 include:b.example a:c.example -all"]},
                "b.example": {"TXT": dns.resolver.NoNameservers()},
                "c.example": {"A": dns.resolver.NoNameservers()},
            }
        )
        with self.assertLogs(level="WARNING") as logs:
            results = zoneaudit.spf.simulate_spf(
                "a.example", "192.0.2.1", resolver=resolver
            )
        self.assertEqual(results["result"], "fail")
        self.assertEqual(len(results["reasons"]), 3)
        self.assertTrue(
            results["reasons"][0].startswith("include lookup for b.example failed")
        )
        self.assertTrue(
            results["reasons"][1].startswith("a lookup for c.example failed")
        )
        self.assertEqual(results["reasons"][-1], "matched mechanism all")
        self.assertEqual(len(logs.records), 2)

    def testSPFGraph(self):
        """Include and redirect edges are walked depth first"""
        resolver = FakeResolver(
            spf_zone(
                {
                    "example.com": "v=spf1 include:a.example.com redirect=b.example.com",
                    "a.example.com": "v=spf1 include:c.example.com -all",
                    "b.example.com": "v=spf1 -all",
                    "c.example.com": "v=spf1 -all",
                }
            )
        )
        graph = zoneaudit.spf.spf_graph("Example.com.", resolver=resolver)
        self.assertEqual(
            [node["domain"] for node in graph["nodes"]],
            ["example.com", "a.example.com", "c.example.com", "b.example.com"],
        )
        self.assertEqual(
            graph["edges"],
            [
                {"from": "example.com", "to": "a.example.com", "edge_type": "include"},
                {
                    "from": "a.example.com",
                    "to": "c.example.com",
                    "edge_type": "include",
                },
                {
                    "from": "example.com",
                    "to": "b.example.com",
                    "edge_type": "redirect",
                },
            ],
        )
        self.assertEqual(graph["lookups"], 4)
        self.assertFalse(graph["cyclic"])

    def testSPFIncludeLoop(self):
        """A self-including record produces a single node and a cyclic graph"""
        resolver = FakeResolver(
            spf_zone({"loop.example.com": "v=spf1 include:loop.example.com -all"})
        )
        graph = zoneaudit.spf.spf_graph("loop.example.com", resolver=resolver)
        self.assertTrue(graph["cyclic"])
        self.assertEqual(len(graph["nodes"]), 1)
        self.assertEqual(graph["lookups"], 1)

    def testSPFGraphMissingRecord(self):
        resolver = FakeResolver(
            spf_zone({"example.com": "v=spf1 include:gone.example.com -all"})
        )
        graph = zoneaudit.spf.spf_graph("example.com", resolver=resolver)
        self.assertEqual(graph["nodes"][1], {"domain": "gone.example.com", "txt": None})

    def testSPFGraphFromRecord(self):
        """A supplied record is used for the root domain without a lookup"""
        resolver = FakeResolver(
            spf_zone(
                {
                    "example.com": "v=spf1 -all",
                    "new.example.net": "v=spf1 ip4:192.0.2.0/24 -all",
                }
            )
        )
        graph = zoneaudit.spf.spf_graph_from_record(
            "example.com", "v=spf1 include:new.example.net -all", resolver=resolver
        )
        self.assertEqual(resolver.queried("example.com", "TXT"), 0)
        self.assertEqual(len(graph["nodes"]), 2)
        self.assertEqual(graph["lookups"], 1)

    def testCheckSPFGraph(self):
        """Lookup counts over the limit and duplicate records are problems"""
        resolver = FakeResolver(
            {
                "example.com": {
                    "TXT": ["v=spf1 include:a.example.com -all", "v=spf1 -all"]
                },
                "a.example.com": {"TXT": ["v=spf1 -all"]},
            }
        )
        results = zoneaudit.spf.check_spf_graph(
            "example.com", max_lookups=1, resolver=resolver
        )
        self.assertFalse(results["ok"])
        self.assertEqual(len(results["problems"]), 2)
        self.assertEqual(results["graph"]["lookups"], 2)

        results = zoneaudit.spf.check_spf_graph_record(
            "example.com", "v=spf1 include:a.example.com -all", resolver=resolver
        )
        self.assertTrue(results["ok"])

    def testResolveChainNoRecords(self):
        """A name with no records returns an error and a one name chain"""
        resolver = FakeResolver({})
        result = zoneaudit.topology.resolve_chain_for_host(
            "nothing.example", resolver=resolver
        )
        self.assertEqual(result["chain"], ["nothing.example"])
        self.assertEqual(result["terminal"], "nothing.example")
        self.assertEqual(result["error"], "no CNAME/A/AAAA records found")

    def testResolveChainEmptyHostname(self):
        result = zoneaudit.topology.resolve_chain_for_host(
            " . ", resolver=FakeResolver({})
        )
        self.assertEqual(result["chain"], [])
        self.assertEqual(result["error"], "empty hostname")

    def testResolveChain(self):
        """CNAMEs are followed and terminal addresses reverse resolved"""
        resolver = FakeResolver(
            {
                "www.example.com": {"CNAME": ["cdn.example.net."]},
                "cdn.example.net": {
                    "A": ["192.0.2.1", "192.0.2.1", "192.0.2.2"],
                    "AAAA": ["2001:db8::1"],
                },
                ptr_name("192.0.2.1"): {"PTR": ["Edge1.Example.net."]},
            }
        )
        result = zoneaudit.topology.resolve_chain_for_host(
            "WWW.example.com.", resolver=resolver
        )
        self.assertEqual(result["name"], "www.example.com")
        self.assertEqual(result["chain"], ["www.example.com", "cdn.example.net"])
        self.assertEqual(result["terminal"], "cdn.example.net")
        self.assertEqual(result["ipv4"], ["192.0.2.1", "192.0.2.2"])
        self.assertEqual(result["ipv6"], ["2001:db8::1"])
        self.assertEqual(
            result["reverse_hostnames"],
            [{"ip": "192.0.2.1", "hostnames": ["edge1.example.net"]}],
        )
        self.assertIsNone(result["error"])

    def testResolveChainWithoutPTR(self):
        resolver = FakeResolver({"host.example.com": {"A": ["192.0.2.1"]}})
        result = zoneaudit.topology.resolve_chain_for_host(
            "host.example.com", resolver=resolver, disable_ptr_lookups=True
        )
        self.assertEqual(result["reverse_hostnames"], [])
        self.assertEqual(resolver.queried(ptr_name("192.0.2.1"), "PTR"), 0)

    def testResolveChainLoop(self):
        """A CNAME loop stops at the first repeated name"""
        resolver = FakeResolver(
            {
                "a.example.com": {"CNAME": ["b.example.com."]},
                "b.example.com": {"CNAME": ["a.example.com."]},
            }
        )
        result = zoneaudit.topology.resolve_chain_for_host(
            "a.example.com", resolver=resolver
        )
        self.assertEqual(result["chain"], ["a.example.com", "b.example.com"])
        self.assertIsNone(result["error"])

    def testResolveChainMaxHops(self):
        zone = {
            f"h{i}.example.com": {"CNAME": [f"h{i + 1}.example.com."]}
            for i in range(10)
        }
        result = zoneaudit.topology.resolve_chain_for_host(
            "h0.example.com", resolver=FakeResolver(zone), max_hops=3
        )
        self.assertEqual(len(result["chain"]), 4)
        self.assertEqual(result["terminal"], "h3.example.com")

    def testResolveChainDoHFallback(self):
        """Missing address families are queried over DoH"""
        resolver = FakeResolver({"app.example.com": {"AAAA": ["2001:db8::5"]}})

        def fake_doh(session, endpoints, name, record_type, timeout):
            if record_type == "A":
                return ["192.0.2.9"]
            return []

        with mock.patch("zoneaudit.topology.query_doh", side_effect=fake_doh) as doh:
            result = zoneaudit.topology.resolve_chain_for_host(
                "app.example.com",
                resolver=resolver,
                doh_endpoints=["https://doh.example/dns-query"],
                session=mock.Mock(),
                disable_ptr_lookups=True,
            )
        self.assertEqual(result["ipv4"], ["192.0.2.9"])
        self.assertEqual(result["ipv6"], ["2001:db8::5"])
        queried_types = [c.args[3] for c in doh.call_args_list]
        self.assertIn("CNAME", queried_types)
        self.assertNotIn("AAAA", queried_types)

    def testQueryDoHEndpoint(self):
        """DoH JSON answers are filtered by record type and de-duplicated"""
        response = mock.Mock(ok=True, status_code=200)
        response.json.return_value = {
            "Status": 0,
            "Answer": [
                {"name": "example.com", "type": 1, "data": "192.0.2.1"},
                {"name": "example.com", "type": 1, "data": "192.0.2.1"},
                {"name": "example.com", "type": 1, "data": "2001:db8::1"},
                {"name": "example.com", "type": 1, "data": "junk"},
            ],
        }
        session = mock.Mock()
        session.get.return_value = response
        records = zoneaudit.doh.query_doh_endpoint(
            session, "https://doh.example/dns-query", "example.com", "A"
        )
        self.assertEqual(records, ["192.0.2.1"])
        _, kwargs = session.get.call_args
        self.assertEqual(kwargs["params"], {"name": "example.com", "type": "A"})
        self.assertEqual(kwargs["headers"], {"accept": "application/dns-json"})
        self.assertEqual(kwargs["timeout"], (2.0, 2.0))

        zoneaudit.doh.query_doh_endpoint(
            session, "https://doh.example/dns-query", "example.com", "A", timeout=8.0
        )
        _, kwargs = session.get.call_args
        self.assertEqual(kwargs["timeout"], (3.0, 8.0))

        response.json.return_value = {
            "Answer": [{"type": 5, "data": "Target.Example.NET."}]
        }
        records = zoneaudit.doh.query_doh_endpoint(
            session, "https://doh.example/dns-query", "www.example.com", "CNAME"
        )
        self.assertEqual(records, ["target.example.net"])

    def testQueryDoHEndpointFailures(self):
        """HTTP errors and malformed payloads are empty answers"""
        session = mock.Mock()
        session.get.return_value = mock.Mock(ok=False, status_code=503)
        self.assertEqual(
            zoneaudit.doh.query_doh_endpoint(session, "https://doh.example", "x", "A"),
            [],
        )
        session.get.side_effect = requests.ConnectionError("refused")
        self.assertEqual(
            zoneaudit.doh.query_doh_endpoint(session, "https://doh.example", "x", "A"),
            [],
        )
        session.get.side_effect = None
        response = mock.Mock(ok=True, status_code=200)
        response.json.side_effect = ValueError("not JSON")
        session.get.return_value = response
        self.assertEqual(
            zoneaudit.doh.query_doh_endpoint(session, "https://doh.example", "x", "A"),
            [],
        )

    def testQueryDoHRace(self):
        """The first non-empty answer from at most three endpoints wins"""
        answers = {
            "https://one.example": [],
            "https://two.example": ["192.0.2.2"],
            "https://three.example": [],
            "https://four.example": ["192.0.2.4"],
        }

        def fake_endpoint(session, endpoint, name, record_type, timeout):
            return answers[endpoint]

        with mock.patch(
            "zoneaudit.doh.query_doh_endpoint", side_effect=fake_endpoint
        ) as endpoint:
            records = zoneaudit.doh.query_doh(
                mock.Mock(), list(answers), "example.com", "A"
            )
        self.assertEqual(records, ["192.0.2.2"])
        called = [c.args[1] for c in endpoint.call_args_list]
        self.assertNotIn("https://four.example", called)
        self.assertEqual(zoneaudit.doh.query_doh(mock.Mock(), [], "x", "A"), [])

    def testResolveDNSServer(self):
        resolve = zoneaudit.topology.resolve_dns_server
        self.assertEqual(resolve(), "1.1.1.1")
        self.assertEqual(resolve("8.8.4.4"), "8.8.4.4")
        self.assertEqual(resolve("custom", "192.0.2.53"), "192.0.2.53")
        self.assertEqual(resolve("__legacy__", doh_provider="Google"), "8.8.8.8")
        self.assertEqual(resolve("", doh_provider="quad9"), "9.9.9.9")
        self.assertEqual(resolve("", doh_provider="unknown"), "1.1.1.1")

    def testResolveDoHEndpoints(self):
        """The endpoint of the selected server comes first"""
        self.assertEqual(
            zoneaudit.topology.resolve_doh_endpoints("9.9.9.9"),
            [
                "https://dns.quad9.net:5053/dns-query",
                "https://cloudflare-dns.com/dns-query",
                "https://dns.google/resolve",
            ],
        )
        self.assertEqual(
            zoneaudit.topology.resolve_doh_endpoints(
                "192.0.2.53", doh_custom_url="https://doh.example/dns-query"
            )[0],
            "https://doh.example/dns-query",
        )

    def testBuildDNSResolver(self):
        resolver = zoneaudit.topology.build_dns_resolver("9.9.9.9")
        addresses = [getattr(ns, "address", ns) for ns in resolver.nameservers]
        self.assertEqual(addresses, ["9.9.9.9"])
        self.assertEqual(resolver.lifetime, 2.0)

    def testHostResolutionCacheExpiry(self):
        """Entries older than the maximum age are misses"""
        cache = zoneaudit.cache.HostResolutionCache(max_len=10, max_age_seconds=300)
        key = zoneaudit.cache.HostCacheKey(
            "dns", "1.1.1.1", "cloudflare", "", 15, False, "example.com"
        )
        with mock.patch("time.time", return_value=1000.0):
            cache.put_many([(key, {"name": "example.com"})])
        with mock.patch("time.time", return_value=1100.0):
            self.assertEqual(cache.get(key), {"name": "example.com"})
        with mock.patch("time.time", return_value=1301.0):
            self.assertIsNone(cache.get(key))

    def testHostResolutionCacheEviction(self):
        """The oldest entries are evicted once the cache is full"""
        cache = zoneaudit.cache.HostResolutionCache(max_len=2, max_age_seconds=300)
        keys = [
            zoneaudit.cache.HostCacheKey("dns", "1.1.1.1", "cloudflare", "", 15, False, h)
            for h in ["a.example", "b.example", "c.example"]
        ]
        cache.put_many([(keys[0], 0), (keys[1], 1)])
        cache.put_many([(keys[2], 2)])
        self.assertEqual(len(cache), 2)
        self.assertEqual(cache.get_many(keys), {keys[1]: 1, keys[2]: 2})

    def testHostResolutionCacheSweepsOnWrite(self):
        """A write drops entries that are older than the maximum age"""
        cache = zoneaudit.cache.HostResolutionCache(max_len=10, max_age_seconds=300)
        old, new = [
            zoneaudit.cache.HostCacheKey("dns", "1.1.1.1", "cloudflare", "", 15, False, h)
            for h in ["old.example", "new.example"]
        ]
        with mock.patch("time.time", return_value=1000.0):
            cache.put_many([(old, {"name": "old.example"})])
        self.assertEqual(len(cache), 1)
        with mock.patch("time.time", return_value=1400.0):
            cache.put_many([(new, {"name": "new.example"})])
            self.assertEqual(len(cache), 1)
            self.assertIsNone(cache.get(old))
            self.assertEqual(cache.get(new), {"name": "new.example"})

    def testTopologyBatchUsesCache(self):
        """Two batches for the same host within the TTL resolve it once"""
        resolver = FakeResolver({"app.example.com": {"A": ["192.0.2.1"]}})
        cache = zoneaudit.cache.HostResolutionCache()
        for _ in range(2):
            results = zoneaudit.resolve_topology_batch(
                ["app.example.com"],
                disable_ptr_lookups=True,
                cache=cache,
                resolver=resolver,
            )
            self.assertEqual(results["resolutions"][0]["ipv4"], ["192.0.2.1"])
        self.assertEqual(resolver.queried("app.example.com", "A"), 1)

    def testTopologyBatchOrder(self):
        """Resolutions follow de-duplicated input order"""
        resolver = FakeResolver(
            {
                "a.example": {"A": ["192.0.2.1"]},
                "b.example": {"A": ["192.0.2.2"]},
            }
        )
        results = zoneaudit.resolve_topology_batch(
            ["b.example", "a.example", "B.example.", ""],
            disable_ptr_lookups=True,
            resolver=resolver,
        )
        self.assertEqual(
            [r["name"] for r in results["resolutions"]], ["b.example", "a.example"]
        )
        self.assertEqual(results["probes"], [])

    def testTopologyBatchOrderAcrossChunks(self):
        """Input order is kept when a batch spans several resolve chunks"""
        hosts = [f"h{i}.example" for i in range(40)]
        hosts.reverse()
        resolver = FakeResolver(
            {host: {"A": [f"192.0.2.{i + 1}"]} for i, host in enumerate(hosts)}
        )
        results = zoneaudit.resolve_topology_batch(
            hosts, disable_ptr_lookups=True, resolver=resolver
        )
        self.assertEqual(len(results["resolutions"]), 40)
        self.assertEqual([r["name"] for r in results["resolutions"]], hosts)
        self.assertEqual(
            [r["ipv4"] for r in results["resolutions"]],
            [[f"192.0.2.{i + 1}"] for i in range(40)],
        )

    def testTopologyBatchDefaultsForNone(self):
        """Options passed as None fall back to their defaults"""
        resolver = FakeResolver({"a.example": {"A": ["192.0.2.1"]}})
        results = zoneaudit.resolve_topology_batch(
            ["a.example"],
            max_hops=None,
            resolver_mode=None,
            lookup_timeout_ms=None,
            disable_ptr_lookups=None,
            resolver=resolver,
        )
        self.assertEqual(results["resolutions"][0]["ipv4"], ["192.0.2.1"])

    def testTopologyBatchUnknownMode(self):
        with self.assertRaises(zoneaudit.TopologyConfigError):
            zoneaudit.resolve_topology_batch(["a.example"], resolver_mode="carrier-pigeon")

    def testTopologyBatchProbes(self):
        """Service hosts are normalized, de-duplicated and probed"""

        def fake_probe(host, session=None):
            return {"host": host, "https_up": True, "http_up": False}

        with mock.patch(
            "zoneaudit.topology.probe_service_host", side_effect=fake_probe
        ) as probe:
            results = zoneaudit.resolve_topology_batch(
                [],
                service_hosts=["WWW.example.com", "www.example.com.", "api.example.com"],
                resolver=FakeResolver({}),
            )
        self.assertEqual(probe.call_count, 2)
        self.assertEqual(
            sorted(p["host"] for p in results["probes"]),
            ["api.example.com", "www.example.com"],
        )

    def testProbeURLRefused(self):
        """A refused connection is reported as down"""
        self.assertFalse(zoneaudit.probe.probe_url("http://127.0.0.1:9", timeout=2.0))

    def testProbeServiceHost(self):
        """Any HTTP response counts as up"""

        def fake_get(url, timeout=None, stream=False):
            if url.startswith("https://"):
                raise requests.exceptions.SSLError("bad certificate")
            return mock.Mock(status_code=500)

        session = mock.Mock()
        session.get.side_effect = fake_get
        result = zoneaudit.probe.probe_service_host("www.example.com", session=session)
        self.assertEqual(
            result, {"host": "www.example.com", "https_up": False, "http_up": True}
        )

    def testProbeURLTimeouts(self):
        """The connect timeout is capped separately from the read timeout"""
        session = mock.Mock()
        self.assertTrue(
            zoneaudit.probe.probe_url("https://www.example.com", session=session)
        )
        _, kwargs = session.get.call_args
        self.assertEqual(kwargs["timeout"], (3.0, 5.0))
        self.assertTrue(kwargs["stream"])
        session.get.return_value.close.assert_called_once()

    def testNewHTTPSession(self):
        session = zoneaudit.probe.new_http_session()
        self.assertEqual(session.max_redirects, 4)
        self.assertTrue(session.headers["User-Agent"].startswith("Mozilla/5.0"))

    def testCLISimulate(self):
        """The CLI prints results as JSON"""
        fake_results = {"result": "pass", "reasons": ["matched mechanism ip4"], "lookups": 1}
        argv = ["zoneaudit", "simulate", "example.com", "192.0.2.1"]
        with mock.patch("sys.argv", argv), mock.patch(
            "zoneaudit._cli.simulate_spf", return_value=fake_results
        ), mock.patch("sys.stdout", new_callable=io.StringIO) as stdout:
            _cli._main()
        self.assertIn('"result": "pass"', stdout.getvalue())

    @unittest.skipUnless(os.path.exists("/etc/resolv.conf"), "no network")
    def testLiveSPFGraph(self):
        """Graphing a real domain always yields the root node"""
        graph = zoneaudit.spf_graph("gmail.com", timeout=1.0, timeout_retries=0)
        self.assertGreaterEqual(len(graph["nodes"]), 1)
        self.assertEqual(graph["nodes"][0]["domain"], "gmail.com")


if __name__ == "__main__":
    unittest.main(verbosity=2)
