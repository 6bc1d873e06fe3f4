#!/usr/bin/env python3
"""
Threaded DNS resolver

This module resolves normalized identifiers (hostnames or IP literals)
to IP addresses with a bounded pool of worker threads, then merges
the results into the unique IP list and the IP to identifier index
that drive the geolocation stage.

Two backends:
* system (default): socket.getaddrinfo, so /etc/hosts, search
  domains and the host's resolver configuration apply. Returns
  both IPv4 and IPv6 addresses.
* dnspython: used when nameservers are given. Queries A and AAAA
  records directly against those servers.

IP literals are never looked up; they resolve to themselves.


# Data structure

Each identifier produces one DNSOutcome:
    identifier: the normalized identifier that was resolved
    addresses: ["ip1", "ip2", ...] without duplicates, in resolver order
    error: None or an error code
    dns_duration_ms: 12.3

Error codes
* NXDOMAIN: The hostname does not exist
* Timeout: No response within the timeout.
* NoNameservers: All nameservers failed to answer.
* NoAnswer: The query succeeded but there are no A or AAAA records.
* EmptyLabel: The hostname is malformed (e.g., 'example..com').
* NoAddresses: The lookup succeeded but returned no address.
* DNSException: Other DNS error.
* Exception: Other error.
"""

# built-in import
import collections
import dataclasses
import logging
import socket
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Tuple
from unittest import mock

# third-party import
import dns.exception
import dns.name
import dns.resolver

# local import
import common
from common import is_ip_literal, run_pool

DNS_TIMEOUT = 5.0  # seconds
ERROR_CODES = [
    "NXDOMAIN",
    "Timeout",
    "NoNameservers",
    "NoAnswer",
    "EmptyLabel",
    "NoAddresses",
    "DNSException",
    "Exception"
]
# Checked in order, so subclasses come before their bases.
DNSPYTHON_ERROR_MAP = (
    (dns.name.EmptyLabel, "EmptyLabel"),
    (dns.resolver.NXDOMAIN, "NXDOMAIN"),
    (dns.exception.Timeout, "Timeout"),
    (dns.resolver.NoNameservers, "NoNameservers"),
    (dns.resolver.NoAnswer, "NoAnswer"),
    (dns.exception.DNSException, "DNSException"),
)
GAI_NOT_FOUND = {socket.EAI_NONAME, getattr(socket, 'EAI_NODATA', socket.EAI_NONAME)}


@dataclasses.dataclass
class DNSOutcome:
    """Result of resolving one identifier"""
    identifier: str
    addresses: List[str] = dataclasses.field(default_factory=list)
    error: Optional[str] = None
    dns_duration_ms: float = 0.0


class Resolver:
    """Resolve one hostname at a time with the system resolver or dnspython

    Instances hold no per-lookup state, so one instance is shared by
    all worker threads.
    """

    def __init__(self, nameservers: Iterable[str] = (), timeout: float = DNS_TIMEOUT):
        self.nameservers = list(nameservers)
        self.dns_resolver = None
        if self.nameservers:
            self.dns_resolver = dns.resolver.Resolver(configure=False)
            self.dns_resolver.nameservers = self.nameservers
            self.dns_resolver.timeout = timeout
            self.dns_resolver.lifetime = timeout * 2
            logging.info("Using DNS servers: %s", self.nameservers)
        else:
            logging.debug("Using the system resolver")

    def resolve_socket(self, hostname: str) -> List[str]:
        """Resolve hostname using socket

        Raises socket.gaierror or UnicodeError on failure.
        """
        infos = socket.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
        return [info[4][0] for info in infos]

    def resolve_dnspython(self, hostname: str) -> List[str]:
        """Resolve hostname using dnspython, A then AAAA

        Raises a dns.exception.DNSException on failure.
        """
        addresses = []
        no_answer = None
        for rdtype in ('A', 'AAAA'):
            try:
                answer = self.dns_resolver.resolve(hostname, rdtype)
            except dns.resolver.NoAnswer as e:
                no_answer = e
                continue
            addresses.extend(str(rdata) for rdata in answer)
        if not addresses and no_answer is not None:
            raise no_answer
        return addresses

    def resolve(self, identifier: str) -> DNSOutcome:
        """Resolve a single identifier

        Never raises: failures are reported in DNSOutcome.error.
        """
        if is_ip_literal(identifier):
            return DNSOutcome(identifier=identifier, addresses=[identifier])

        start_time = time.time()
        error = None
        addresses = []
        try:
            if self.dns_resolver is not None:
                addresses = self.resolve_dnspython(identifier)
            else:
                addresses = self.resolve_socket(identifier)
        except dns.exception.DNSException as e:
            error = dnspython_error_code(e)
        except socket.gaierror as e:
            error = gai_error_code(e)
        except UnicodeError:
            # The idna codec rejects empty and overlong labels.
            error = "EmptyLabel"
        except Exception as e:
            logging.debug("unexpected error resolving %s: %r", identifier, e)
            error = "Exception"
        resolve_time = time.time() - start_time

        addresses = list(dict.fromkeys(addresses))
        if error is None and not addresses:
            error = "NoAddresses"
        logging.debug("%s -> %s", identifier, error or addresses)
        return DNSOutcome(identifier=identifier,
                          addresses=addresses if error is None else [],
                          error=error,
                          dns_duration_ms=round(resolve_time * 1000, 1))


class TestResolver(unittest.TestCase):
    """Test DNS resolver functionality"""

    @staticmethod
    def fake_getaddrinfo(table):
        """Return a getaddrinfo stand-in answering from a dict"""
        def getaddrinfo(host, port, *args, **kwargs):
            if host not in table:
                raise socket.gaierror(socket.EAI_NONAME, 'Name or service not known')
            infos = []
            for ip in table[host]:
                family = socket.AF_INET6 if ':' in ip else socket.AF_INET
                infos.append((family, socket.SOCK_STREAM, 6, '', (ip, 0)))
            return infos
        return getaddrinfo

    def test_resolve_ip_literal(self):
        """Test IP literals resolve to themselves without a lookup"""
        resolver = Resolver()
        with mock.patch.object(socket, 'getaddrinfo') as getaddrinfo:
            for ip in ('1.2.3.4', '2001:db8::1'):
                outcome = resolver.resolve(ip)
                self.assertEqual(outcome.addresses, [ip])
                self.assertIsNone(outcome.error)
        getaddrinfo.assert_not_called()

    def test_resolve_socket(self):
        """Test the system resolver backend"""
        table = {'multi.example': ['192.0.2.1', '192.0.2.2', '192.0.2.1', '2001:db8::2']}
        resolver = Resolver()
        with mock.patch.object(socket, 'getaddrinfo', self.fake_getaddrinfo(table)):
            outcome = resolver.resolve('multi.example')
            self.assertIsNone(outcome.error)
            self.assertEqual(outcome.addresses, ['192.0.2.1', '192.0.2.2', '2001:db8::2'])
            outcome = resolver.resolve('nonexistent.example')
            self.assertEqual(outcome.error, 'NXDOMAIN')
            self.assertEqual(outcome.addresses, [])

    def test_resolve_socket_errors(self):
        """Test error codes from the system resolver backend"""
        resolver = Resolver()
        test_cases = (
            (socket.gaierror(socket.EAI_AGAIN, 'Temporary failure'), 'Timeout'),
            (socket.gaierror(socket.EAI_FAIL, 'Non-recoverable failure'), 'DNSException'),
            (UnicodeError('label empty or too long'), 'EmptyLabel'),
            (RuntimeError('boom'), 'Exception'),
        )
        for exc, expected in test_cases:
            with self.subTest(expected=expected):
                with mock.patch.object(socket, 'getaddrinfo', side_effect=exc):
                    outcome = resolver.resolve('example.com')
                self.assertEqual(outcome.error, expected)
                self.assertIn(outcome.error, ERROR_CODES)
        with mock.patch.object(socket, 'getaddrinfo', return_value=[]):
            self.assertEqual(resolver.resolve('example.com').error, 'NoAddresses')

    def test_resolve_localhost(self):
        """Test resolving localhost with the real system resolver"""
        outcome = Resolver().resolve('localhost')
        self.assertIsNone(outcome.error)
        self.assertTrue(set(outcome.addresses) & {'127.0.0.1', '::1'})

    def test_resolve_dnspython(self):
        """Test the dnspython backend with a mocked dns.resolver.Resolver"""
        resolver = Resolver(nameservers=['192.0.2.53'])
        self.assertEqual(resolver.nameservers, ['192.0.2.53'])
        self.assertIsNotNone(resolver.dns_resolver)

        def fake_resolve(hostname, rdtype):
            if hostname == 'v4only.example':
                if rdtype == 'AAAA':
                    raise dns.resolver.NoAnswer()
                return ['198.51.100.7']
            if hostname == 'txtonly.example':
                raise dns.resolver.NoAnswer()
            if hostname == 'slow.example':
                raise dns.exception.Timeout()
            raise dns.resolver.NXDOMAIN()
        with mock.patch.object(resolver.dns_resolver, 'resolve', side_effect=fake_resolve):
            outcome = resolver.resolve('v4only.example')
            self.assertEqual(outcome.addresses, ['198.51.100.7'])
            self.assertIsNone(outcome.error)
            self.assertEqual(resolver.resolve('txtonly.example').error, 'NoAnswer')
            self.assertEqual(resolver.resolve('slow.example').error, 'Timeout')
            self.assertEqual(resolver.resolve('missing.example').error, 'NXDOMAIN')

    def test_resolve_all(self):
        """Test resolve_all() returns one outcome per identifier, in order"""
        table = {'a.example': ['192.0.2.1'], 'b.example': ['192.0.2.2']}
        identifiers = ['b.example', 'a.example', 'missing.example', '203.0.113.9']
        with mock.patch.object(socket, 'getaddrinfo', self.fake_getaddrinfo(table)):
            outcomes = resolve_all(identifiers, 30, progress=False)
        self.assertEqual([o.identifier for o in outcomes], identifiers)
        self.assertEqual(outcomes[0].addresses, ['192.0.2.2'])
        self.assertEqual(outcomes[2].error, 'NXDOMAIN')
        self.assertEqual(outcomes[3].addresses, ['203.0.113.9'])

    def test_resolve_all_empty(self):
        """Test resolve_all() with empty identifier list"""
        self.assertEqual(resolve_all([], 30, progress=False), [])

    def test_resolve_all_worker_count(self):
        """Test resolve_all() starts only as many workers as identifiers"""
        with mock.patch.object(common, 'ThreadPoolExecutor', wraps=ThreadPoolExecutor) as executor_class:
            outcomes = resolve_all(['192.0.2.1', '192.0.2.2'], 30, progress=False)
        executor_class.assert_called_once_with(max_workers=2)
        self.assertEqual(len(outcomes), 2)

    def test_aggregate(self):
        """Test aggregate() merges outcomes keyed by IP"""
        outcomes = [
            DNSOutcome('a.example', ['192.0.2.1', '192.0.2.2']),
            DNSOutcome('b.example', ['192.0.2.2']),
            DNSOutcome('missing.example', [], 'NXDOMAIN'),
            DNSOutcome('empty.example', []),
            DNSOutcome('a.example', ['192.0.2.1']),
        ]
        ip_list, ip_index = aggregate(outcomes)
        self.assertEqual(ip_list, ['192.0.2.1', '192.0.2.2'])
        self.assertEqual(ip_index, {'192.0.2.1': ['a.example'],
                                    '192.0.2.2': ['a.example', 'b.example']})
        self.assertEqual([o.identifier for o in failed_outcomes(outcomes)],
                         ['missing.example', 'empty.example'])

    def test_aggregate_origins(self):
        """Test aggregate() maps IPs back to the raw identifiers"""
        outcomes = [DNSOutcome('github.com', ['140.82.112.3'])]
        origins = {'github.com': ['https://github.com', 'user@github.com']}
        ip_list, ip_index = aggregate(outcomes, origins)
        self.assertEqual(ip_list, ['140.82.112.3'])
        self.assertEqual(ip_index['140.82.112.3'], ['https://github.com', 'user@github.com'])

    def test_get_statistics(self):
        """Test get_statistics()"""
        self.assertEqual(get_statistics([])['count'], 0)
        outcomes = [DNSOutcome('x', ['192.0.2.1'], dns_duration_ms=float(ms)) for ms in range(1, 21)]
        stats = get_statistics(outcomes)
        self.assertEqual(stats['count'], 20)
        self.assertEqual(stats['min_ms'], 1.0)
        self.assertEqual(stats['max_ms'], 20.0)
        self.assertEqual(stats['p95_ms'], 20.0)
        self.assertAlmostEqual(stats['avg_ms'], 10.5)


def dnspython_error_code(e: Exception) -> str:
    """Map a dnspython exception to an error code"""
    for exc_class, code in DNSPYTHON_ERROR_MAP:
        if isinstance(e, exc_class):
            return code
    return "Exception"


def gai_error_code(e: socket.gaierror) -> str:
    """Map a socket.gaierror to an error code"""
    if e.errno in GAI_NOT_FOUND:
        return "NXDOMAIN"
    if e.errno == socket.EAI_AGAIN:
        return "Timeout"
    return "DNSException"


def resolve_all(identifiers: List[str], max_workers: int,
                resolver: Optional[Resolver] = None, progress: bool = True) -> List[DNSOutcome]:
    """Resolve identifiers concurrently

    Args:
        identifiers: normalized identifiers
        max_workers: upper bound on concurrent lookups
        resolver: Resolver to use; a system resolver by default
        progress: show a progress bar

    Returns:
        exactly one DNSOutcome per identifier, in the order of identifiers
    """
    if resolver is None:
        resolver = Resolver()
    return run_pool(resolver.resolve, identifiers, max_workers,
                    desc='Resolving hostnames', progress=progress)


def failed_outcomes(outcomes: List[DNSOutcome]) -> List[DNSOutcome]:
    """Return outcomes that contribute no IP address"""
    return [outcome for outcome in outcomes if outcome.error is not None or not outcome.addresses]


def aggregate(outcomes: List[DNSOutcome],
              origins: Optional[Dict[str, List[str]]] = None) -> Tuple[List[str], Dict[str, List[str]]]:
    """Merge DNS outcomes into unique IPs and an IP to identifier index

    Args:
        outcomes: DNS outcomes, typically from resolve_all()
        origins: optional dict mapping a normalized identifier to the
            raw identifiers it came from. When given, the index holds
            the raw identifiers.

    Returns:
        tuple (ip_list, ip_index)
        ip_list is a list of unique IP addresses in first-seen order
        ip_index is a dict with IP as key and list of distinct identifiers as value

    Failed outcomes are logged as warnings and otherwise ignored.
    """
    ip_list = []
    ip_index = collections.defaultdict(list)
    for outcome in outcomes:
        if outcome.error is not None or not outcome.addresses:
            logging.warning("could not resolve %s: %s", outcome.identifier, outcome.error or "NoAddresses")
            continue
        names = origins.get(outcome.identifier, [outcome.identifier]) if origins else [outcome.identifier]
        for ip in outcome.addresses:
            if ip not in ip_index:
                ip_list.append(ip)
            for name in names:
                if name not in ip_index[ip]:
                    ip_index[ip].append(name)
    return ip_list, dict(ip_index)


def get_statistics(outcomes: List[DNSOutcome]) -> dict:
    """Get resolution timing statistics

    Returns:
        dict with min, avg, p95, max times in milliseconds
    """
    times_ms = [outcome.dns_duration_ms for outcome in outcomes]
    if not times_ms:
        return {
            'min_ms': 0.0,
            'avg_ms': 0.0,
            'p95_ms': 0.0,
            'max_ms': 0.0,
            'count': 0
        }

    sorted_times = sorted(times_ms)
    p95_index = min(int(0.95 * len(sorted_times)), len(sorted_times) - 1)

    return {
        'min_ms': min(times_ms),
        'avg_ms': sum(times_ms) / len(times_ms),
        'p95_ms': sorted_times[p95_index],
        'max_ms': max(times_ms),
        'count': len(times_ms)
    }


def run_dns(identifiers: List[str], max_workers: int, nameservers: Iterable[str] = (),
            origins: Optional[Dict[str, List[str]]] = None,
            progress: bool = True) -> Tuple[List[str], Dict[str, List[str]], List[DNSOutcome]]:
    """Resolve identifiers and aggregate the outcomes

    Returns:
        tuple (ip_list, ip_index, failures), see aggregate()
    """
    start_time = time.time()
    outcomes = resolve_all(identifiers, max_workers, Resolver(nameservers), progress=progress)
    ip_list, ip_index = aggregate(outcomes, origins)
    failures = failed_outcomes(outcomes)
    stats = get_statistics(outcomes)

    logging.info("DNS resolution completed in %.1fs", time.time() - start_time)
    logging.info("* identifiers: %s, unique IPs: %s, failures: %s",
                 f"{len(identifiers):,}", f"{len(ip_list):,}", f"{len(failures):,}")
    if stats['count'] > 0:
        logging.debug("* timing stats: min=%.1fms, avg=%.1fms, p95=%.1fms, max=%.1fms",
                      stats['min_ms'], stats['avg_ms'], stats['p95_ms'], stats['max_ms'])
    return ip_list, ip_index, failures


if __name__ == '__main__':
    unittest.main()
