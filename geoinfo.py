#!/usr/bin/env python3
"""
Report the geographic location of hostnames, URLs, email addresses
and IP addresses, with the distance from your own location.

Example:
    geoinfo gatech.edu https://www.clemson.edu/ user@utk.edu 8.8.8.8

Pipeline:
1. Ask the geolocation service where the caller is. This location is
   the reference point for every distance, so failing here is fatal.
2. Normalize the identifiers to bare hostnames or IP addresses.
3. Resolve them with a bounded pool of DNS workers and merge the
   answers into unique IPs.
4. Geolocate each unique IP once with a bounded pool of HTTP workers.
5. Join the locations back to the identifiers, compute distances and
   print the table sorted by identifier.

With no identifiers, the caller's own IP address is reported.
"""

# built-in import
import argparse
import contextlib
import dataclasses
import io
import json
import logging
import socket
import sys
import threading
import time
import unittest
from typing import List, Optional
from unittest import mock

# third-party import
import requests

# local import
from common import (DEFAULT_SERVICE_HOST, DEFAULT_WORKERS, REQUEST_TIMEOUT, VERSION,
                    Config, SelfLocationError, normalize_all, setup_logging)
from geolocate import GeoClient, GeoRecord, geolocate_all, lookup_self
from report import ReportRow, build_report, render_table
from resolver import DNSOutcome, run_dns


@dataclasses.dataclass
class RunResult:
    """Everything the table printer needs from one run"""
    rows: List[ReportRow]
    self_record: GeoRecord
    dns_failures: List[DNSOutcome]
    geo_failures: List[GeoRecord]
    elapsed: float


def run(inputs: List[str], config: Config, client: Optional[GeoClient] = None) -> RunResult:
    """Run the whole pipeline for one set of identifiers

    Args:
        inputs: raw identifiers as typed by the user; empty means the
            caller's own IP address
        config: run parameters
        client: GeoClient to use; one is created (and closed) if omitted

    Raises SelfLocationError if the caller's location is unknown.
    """
    start_time = time.time()
    own_client = client is None
    if own_client:
        client = GeoClient(config.service_host, config.timeout, max_connections=config.workers)
    try:
        self_record = lookup_self(client)
        if config.external_ip_only:
            return RunResult([], self_record, [], [], time.time() - start_time)

        if not inputs:
            inputs = [self_record.ip]
        origins = normalize_all(inputs)
        ip_list, ip_index, dns_failures = run_dns(list(origins), config.workers, config.nameservers,
                                                  origins=origins, progress=config.progress)
        records = geolocate_all(client, ip_list, config.workers, progress=config.progress)
        rows, geo_failures = build_report(records, ip_index, self_record.loc, config.distance_formula)
    finally:
        if own_client:
            client.close()
    return RunResult(rows, self_record, dns_failures, geo_failures, time.time() - start_time)


def print_result(result: RunResult, config: Config, file=None):
    """Print the table and the caller's own location

    Failures are not repeated here; the pools log them to stderr.
    """
    file = file or sys.stdout
    me = result.self_record
    if config.external_ip_only:
        print(f'ip       : {me.ip}', file=file)
        print(f'hostname : {me.hostname}', file=file)
        print(f'org      : {me.org}', file=file)
        print(f'city     : {me.city}', file=file)
        print(f'region   : {me.region}', file=file)
        print(f'country  : {me.country}', file=file)
        print(f'loc      : {me.loc}', file=file)
        return

    print(render_table(result.rows, merge_rows=config.merge_rows,
                       one_row_per_entry=config.one_row_per_entry,
                       wrap_width=config.wrap_width), file=file)
    print('', file=file)
    print(f'your IP       : {me.ip}', file=file)
    print(f'your location : {me.loc}', file=file)
    print(f'elapsed time  : {result.elapsed:.2f}s', file=file)


def build_parser() -> argparse.ArgumentParser:
    """Return the command line parser"""
    parser = argparse.ArgumentParser(
        prog='geoinfo',
        description='Geolocate hostnames, URLs, email addresses and IP addresses',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s gatech.edu https://www.clemson.edu/ user@utk.edu 8.8.8.8
  %(prog)s -m -1 example.com example.org
  %(prog)s -x
        """
    )
    parser.add_argument('identifiers', nargs='*',
                        help='hostname, URL, email address or IP address (default: your own IP)')
    parser.add_argument('--workers', type=int, default=DEFAULT_WORKERS,
                        help='number of simultaneous workers (default: %(default)s)')
    parser.add_argument('-x', '--external-ip', action='store_true',
                        help='only show your own external IP address and location')
    parser.add_argument('-m', '--merge', action='store_true',
                        help='merge rows that share an IP address')
    parser.add_argument('-1', '--one-row', action='store_true', dest='one_row',
                        help='show only one row per identifier')
    parser.add_argument('-W', '--wrap', type=int, default=0, metavar='WIDTH',
                        help='wrap cells longer than WIDTH characters (default: no wrapping)')
    parser.add_argument('--nameserver', action='append', default=[], metavar='IP',
                        help='query this DNS server instead of the system resolver (repeatable)')
    parser.add_argument('--vincenty', action='store_true',
                        help='use the Vincenty ellipsoid formula instead of haversine')
    parser.add_argument('--host', default=DEFAULT_SERVICE_HOST,
                        help='geolocation service host (default: %(default)s)')
    parser.add_argument('--timeout', type=float, default=REQUEST_TIMEOUT,
                        help='per-request timeout in seconds (default: %(default)s)')
    parser.add_argument('--no-progress', action='store_true',
                        help='do not show progress bars')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='enable verbose output')
    parser.add_argument('-V', '--version', action='version', version=f'%(prog)s {VERSION}')
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    """Build a Config from parsed arguments

    Raises ValueError for out of range values.
    """
    return Config(workers=args.workers,
                  service_host=args.host,
                  timeout=args.timeout,
                  nameservers=args.nameserver,
                  distance_formula='vincenty' if args.vincenty else 'haversine',
                  merge_rows=args.merge,
                  one_row_per_entry=args.one_row,
                  wrap_width=args.wrap,
                  external_ip_only=args.external_ip,
                  progress=not args.no_progress)


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for console_scripts"""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose)
    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    try:
        result = run(args.identifiers, config)
    except SelfLocationError as e:
        logging.error('%s', e)
        return 1
    except KeyboardInterrupt:
        print('Interrupted by user.', file=sys.stderr)
        return 130
    print_result(result, config)
    return 0


class TestGeoinfo(unittest.TestCase):
    """Test the pipeline end to end with fake DNS and HTTP"""

    SELF = {"ip": "203.0.113.5", "city": "Ashburn", "region": "Virginia",
            "country": "US", "loc": "39.0481,-77.4728", "org": "AS64496 Example ISP"}
    DNS_TABLE = {
        'cisco.com': ['72.163.4.185'],
        'github.com': ['140.82.112.3'],
        'a.example': ['192.0.2.10'],
        'b.example': ['192.0.2.10'],
        'c.example': ['192.0.2.10', '2001:db8::10'],
    }
    GEO_TABLE = {
        '72.163.4.185': {"city": "Richardson", "region": "Texas", "country": "US",
                         "loc": "32.9483,-96.7299", "org": "AS109 Cisco Systems, Inc."},
        '140.82.112.3': {"city": "San Francisco", "region": "California", "country": "US",
                         "loc": "37.7749,-122.4194", "org": "AS36459 GitHub, Inc."},
        '1.2.3.4': {"city": "Brisbane", "region": "Queensland", "country": "AU",
                    "loc": "-27.4679,153.0281", "org": "AS13335 Cloudflare"},
        '192.0.2.10': {"loc": "37.7510,-97.8220", "country": "US"},
        '2001:db8::10': {"loc": "37.7510,-97.8220", "country": "US"},
    }

    def setUp(self):
        self.lock = threading.Lock()
        self.requested = []
        self.config = Config(progress=False)

    def fake_getaddrinfo(self, host, port, *args, **kwargs):
        """Answer from DNS_TABLE"""
        if host not in self.DNS_TABLE:
            raise socket.gaierror(socket.EAI_NONAME, 'Name or service not known')
        return [(socket.AF_INET6 if ':' in ip else socket.AF_INET, socket.SOCK_STREAM, 6, '', (ip, 0))
                for ip in self.DNS_TABLE[host]]

    def fake_get(self, url, timeout):
        """Answer from SELF and GEO_TABLE, recording each request"""
        parts = url.split('/')
        ip = parts[3] if len(parts) == 5 else ''
        with self.lock:
            self.requested.append(ip)
        if not ip:
            return mock.Mock(status_code=200, text=json.dumps(self.SELF))
        if ip not in self.GEO_TABLE:
            return mock.Mock(status_code=502, text='Bad Gateway')
        return mock.Mock(status_code=200, text=json.dumps(dict(self.GEO_TABLE[ip], ip=ip)))

    def make_client(self, get=None):
        session = mock.Mock(spec=requests.Session)
        session.headers = {}
        session.get.side_effect = get or self.fake_get
        return GeoClient(session=session)

    def run_pipeline(self, inputs, config=None):
        with mock.patch.object(socket, 'getaddrinfo', self.fake_getaddrinfo):
            return run(inputs, config or self.config, client=self.make_client())

    def test_end_to_end(self):
        """Test URL, email and IP inputs end to end"""
        result = self.run_pipeline(['https://cisco.com', 'user@github.com', '1.2.3.4'])
        self.assertEqual([row.identifier for row in result.rows],
                         ['1.2.3.4', 'https://cisco.com', 'user@github.com'])
        self.assertEqual([row.ip for row in result.rows],
                         ['1.2.3.4', '72.163.4.185', '140.82.112.3'])
        self.assertEqual(result.rows[1].city, 'Richardson')
        self.assertNotEqual(result.rows[1].distance, 'N/A')
        self.assertEqual(result.self_record.ip, '203.0.113.5')
        self.assertCountEqual(self.requested, ['', '1.2.3.4', '72.163.4.185', '140.82.112.3'])
        self.assertEqual(result.dns_failures, [])
        self.assertEqual(result.geo_failures, [])

    def test_one_request_per_unique_ip(self):
        """Test identifiers sharing an IP cause one geolocation request"""
        result = self.run_pipeline(['a.example', 'b.example', 'c.example', 'https://a.example/x'])
        self.assertEqual(self.requested.count('192.0.2.10'), 1)
        self.assertEqual(self.requested.count('2001:db8::10'), 1)
        self.assertEqual(len(self.requested), 3)
        self.assertEqual([row.identifier for row in result.rows],
                         ['a.example', 'b.example', 'c.example', 'https://a.example/x'])
        for row in result.rows:
            self.assertEqual(row.ip, '192.0.2.10')
            self.assertEqual(row.distance, 'N/A')
            self.assertEqual(row.city, 'N/A')

    def test_failures_are_partial(self):
        """Test DNS and geolocation failures do not abort the run and are logged once"""
        with self.assertLogs(level='WARNING') as logs:
            result = self.run_pipeline(['nonexistent.example', 'github.com', '198.51.100.1'])
        self.assertEqual([outcome.identifier for outcome in result.dns_failures], ['nonexistent.example'])
        self.assertEqual([record.ip for record in result.geo_failures], ['198.51.100.1'])
        self.assertEqual([row.identifier for row in result.rows], ['github.com'])
        self.assertEqual(len([line for line in logs.output if 'nonexistent.example' in line]), 1)
        self.assertEqual(len([line for line in logs.output if '198.51.100.1' in line]), 1)

    def test_no_inputs_uses_own_ip(self):
        """Test an empty input list reports the caller's own IP"""
        self.GEO_TABLE = dict(self.GEO_TABLE, **{'203.0.113.5': self.SELF})
        result = self.run_pipeline([])
        self.assertEqual([row.identifier for row in result.rows], ['203.0.113.5'])
        self.assertEqual(result.rows[0].distance, '0.00')

    def test_external_ip_only(self):
        """Test external_ip_only skips DNS and the geolocation pool"""
        config = Config(progress=False, external_ip_only=True)
        with mock.patch.object(socket, 'getaddrinfo') as getaddrinfo:
            result = run(['github.com'], config, client=self.make_client())
        getaddrinfo.assert_not_called()
        self.assertEqual(self.requested, [''])
        self.assertEqual(result.rows, [])
        out = io.StringIO()
        print_result(result, config, file=out)
        self.assertIn('203.0.113.5', out.getvalue())
        self.assertIn('39.0481,-77.4728', out.getvalue())

    def test_self_location_failure(self):
        """Test the run aborts when the caller's location is unknown"""
        def offline(url, timeout):
            raise requests.ConnectionError('offline')
        with self.assertRaises(SelfLocationError):
            run(['github.com'], self.config, client=self.make_client(offline))

    def test_print_result(self):
        """Test print_result() prints the table and the footer"""
        with self.assertLogs(level='WARNING'):
            result = self.run_pipeline(['https://cisco.com', 'nonexistent.example'])
        out = io.StringIO()
        print_result(result, self.config, file=out)
        text = out.getvalue()
        self.assertIn('https://cisco.com', text)
        self.assertIn('Richardson', text)
        self.assertNotIn('nonexistent.example', text)
        self.assertIn('your location : 39.0481,-77.4728', text)

    def test_parse_args(self):
        """Test command line options map to Config"""
        args = build_parser().parse_args(['--workers', '5', '-m', '-1', '-W', '20', '--vincenty',
                                          '--nameserver', '9.9.9.9', '--nameserver', '1.1.1.1',
                                          'example.com', 'user@example.org'])
        config = config_from_args(args)
        self.assertEqual(args.identifiers, ['example.com', 'user@example.org'])
        self.assertEqual(config.workers, 5)
        self.assertTrue(config.merge_rows)
        self.assertTrue(config.one_row_per_entry)
        self.assertEqual(config.wrap_width, 20)
        self.assertEqual(config.distance_formula, 'vincenty')
        self.assertEqual(config.nameservers, ('9.9.9.9', '1.1.1.1'))
        self.assertFalse(config.external_ip_only)
        defaults = config_from_args(build_parser().parse_args([]))
        self.assertEqual(defaults, Config())

    def test_main(self):
        """Test main() exit codes"""
        module = sys.modules[__name__]
        result = RunResult([], GeoRecord(ip='203.0.113.5', loc='39.0481,-77.4728'), [], [], 0.5)
        with mock.patch.object(module, 'setup_logging'):
            with mock.patch.object(module, 'run', return_value=result), \
                    contextlib.redirect_stdout(io.StringIO()) as out:
                self.assertEqual(main(['--no-progress', 'example.com']), 0)
            self.assertIn('your IP       : 203.0.113.5', out.getvalue())
            with mock.patch.object(module, 'run', side_effect=SelfLocationError('offline')), \
                    self.assertLogs(level='ERROR'):
                self.assertEqual(main(['--no-progress', 'example.com']), 1)
            with mock.patch.object(module, 'run', side_effect=KeyboardInterrupt), \
                    contextlib.redirect_stderr(io.StringIO()):
                self.assertEqual(main(['--no-progress', 'example.com']), 130)
            for argv in (['--workers', '0', 'example.com'], ['--nameserver', 'not-an-ip', 'example.com']):
                with self.subTest(argv=argv), mock.patch.object(module, 'run') as run_mock, \
                        contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit) as cm:
                    main(argv)
                self.assertEqual(cm.exception.code, 2)
                run_mock.assert_not_called()


if __name__ == '__main__':
    sys.exit(main())
