#!/usr/bin/env python3
"""
Geolocate IP addresses using the ipinfo.io JSON API

    GET https://ipinfo.io/<ip>/json   location of <ip>
    GET https://ipinfo.io/json        location of the caller

One request per unique IP, one attempt per request, no API token.

# Error bodies

The service does not return structured error codes that are stable
enough to rely on, so errors are recognized by substrings of the
response body. This is fragile: if the wording changes upstream,
rate limiting shows up as a plain HTTP error and invalid IPs show up
as HTTP errors instead of sentinel rows.
* RATE_LIMIT_MARKERS: the free quota is used up. The record carries
  a RateLimitError.
* INVALID_IP_MARKERS: the service does not consider the input an IP
  address. The record carries 'Invalid IP' and 'N/A' sentinels and
  no error, because the request itself succeeded.
"""

# built-in import
import dataclasses
import json
import logging
import threading
import time
import unittest
from typing import List, Optional
from unittest import mock

# third-party import
import requests
from requests.adapters import HTTPAdapter

# local import
from common import (DEFAULT_SERVICE_HOST, DEFAULT_WORKERS, NOT_AVAILABLE,
                    REQUEST_TIMEOUT, VERSION, GeolocationError, RateLimitError,
                    SelfLocationError, run_pool)
from distance import parse_loc

RATE_LIMIT_MARKERS = ('Rate limit exceeded',)
INVALID_IP_MARKERS = ('Please provide a valid IP address', 'Wrong ip')
INVALID_IP_HOSTNAME = 'Invalid IP'
GEO_FIELDS = ('ip', 'hostname', 'city', 'region', 'country', 'loc', 'org', 'postal')


@dataclasses.dataclass
class GeoRecord:
    """Geolocation of one IP address

    Fields missing from the service response are empty strings. When
    error is set, the other fields (apart from ip) are empty.
    """
    ip: str = ''
    hostname: str = ''
    city: str = ''
    region: str = ''
    country: str = ''
    loc: str = ''
    org: str = ''
    postal: str = ''
    error: Optional[GeolocationError] = None

    @classmethod
    def from_json(cls, ip: str, data: dict) -> 'GeoRecord':
        """Build a record from a decoded response, ignoring unknown fields

        The record keeps the requested ip, whatever form the service
        echoes back; the service's ip is used only for the caller's own
        lookup, where ip is empty.
        """
        values = {}
        for field in GEO_FIELDS:
            value = data.get(field)
            values[field] = '' if value is None else str(value)
        if ip:
            values['ip'] = ip
        return cls(**values)

    @classmethod
    def invalid_ip(cls, ip: str) -> 'GeoRecord':
        """Build the sentinel record for an address the service rejects"""
        return cls(ip=ip, hostname=INVALID_IP_HOSTNAME, city=NOT_AVAILABLE,
                   region=NOT_AVAILABLE, country=NOT_AVAILABLE, loc=NOT_AVAILABLE,
                   org=NOT_AVAILABLE, postal=NOT_AVAILABLE)


class GeoClient:
    """HTTP client for the geolocation service

    One client is shared by all worker threads of a run. Call close()
    or use it as a context manager.
    """

    def __init__(self, host: str = DEFAULT_SERVICE_HOST, timeout: float = REQUEST_TIMEOUT,
                 max_connections: int = DEFAULT_WORKERS, session: Optional[requests.Session] = None):
        self.host = host
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=1, pool_maxsize=max_connections, max_retries=0)
            session.mount('https://', adapter)
        session.headers.update({
            'Accept': 'application/json',
            'User-Agent': f'geoinfo/{VERSION}',
        })
        self.session = session

    def __enter__(self):
        """Enter context manager"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager"""
        self.close()

    def close(self):
        """Close pooled connections"""
        self.session.close()

    def url_for(self, ip: str) -> str:
        """Return the API URL for ip, or for the caller when ip is empty"""
        if ip:
            return f'https://{self.host}/{ip}/json'
        return f'https://{self.host}/json'

    def lookup(self, ip: str) -> GeoRecord:
        """Geolocate one IP address; empty ip means the caller's own address

        Never raises: failures are reported in GeoRecord.error.
        """
        url = self.url_for(ip)
        start_time = time.time()
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            logging.debug('%s failed: %r', url, e)
            return GeoRecord(ip=ip, error=GeolocationError(ip, f'request failed: {e}'))
        logging.debug('%s -> HTTP %s in %.0fms', url, response.status_code, (time.time() - start_time) * 1000)

        body = response.text or ''
        if any(marker in body for marker in RATE_LIMIT_MARKERS):
            return GeoRecord(ip=ip, error=RateLimitError(ip, 'Rate limit exceeded'))
        if any(marker in body for marker in INVALID_IP_MARKERS):
            return GeoRecord.invalid_ip(ip)
        if not 200 <= response.status_code < 300:
            return GeoRecord(ip=ip, error=GeolocationError(ip, f'HTTP {response.status_code}'))
        try:
            data = json.loads(body)
        except ValueError as e:
            return GeoRecord(ip=ip, error=GeolocationError(ip, f'invalid JSON: {e}'))
        if not isinstance(data, dict):
            return GeoRecord(ip=ip, error=GeolocationError(ip, 'unexpected JSON document'))
        return GeoRecord.from_json(ip, data)


class TestGeolocate(unittest.TestCase):
    """Test geolocation client and pool"""

    GOOGLE_DNS = {
        "ip": "8.8.8.8",
        "hostname": "dns.google",
        "city": "Mountain View",
        "region": "California",
        "country": "US",
        "loc": "37.4056,-122.0775",
        "org": "AS15169 Google LLC",
        "postal": "94043",
        "timezone": "America/Los_Angeles",
        "anycast": True
    }

    @staticmethod
    def make_client(status_code=200, text='', side_effect=None):
        """Return a GeoClient whose session answers with a canned response"""
        session = mock.Mock(spec=requests.Session)
        session.headers = {}
        if side_effect is not None:
            session.get.side_effect = side_effect
        else:
            session.get.return_value = mock.Mock(status_code=status_code, text=text)
        return GeoClient(host='ipinfo.example', timeout=10.0, session=session)

    def test_url_for(self):
        """Test url_for() for an IP and for the caller"""
        client = self.make_client()
        self.assertEqual(client.url_for('8.8.8.8'), 'https://ipinfo.example/8.8.8.8/json')
        self.assertEqual(client.url_for(''), 'https://ipinfo.example/json')

    def test_lookup_success(self):
        """Test lookup() decodes a normal response"""
        client = self.make_client(text=json.dumps(self.GOOGLE_DNS))
        record = client.lookup('8.8.8.8')
        client.session.get.assert_called_once_with('https://ipinfo.example/8.8.8.8/json', timeout=10.0)
        self.assertIsNone(record.error)
        self.assertEqual(record.ip, '8.8.8.8')
        self.assertEqual(record.hostname, 'dns.google')
        self.assertEqual(record.loc, '37.4056,-122.0775')
        self.assertEqual(record.org, 'AS15169 Google LLC')
        self.assertFalse(hasattr(record, 'timezone'))

    def test_lookup_keeps_requested_ip(self):
        """Test lookup() keys the record on the requested IP, not the echoed one"""
        body = json.dumps({'ip': '2001:0db8:0000:0000:0000:0000:0000:0001', 'loc': '1.0,2.0'})
        record = self.make_client(text=body).lookup('2001:db8::1')
        self.assertEqual(record.ip, '2001:db8::1')
        self.assertEqual(record.loc, '1.0,2.0')

    def test_lookup_missing_fields(self):
        """Test lookup() defaults missing fields to empty strings"""
        client = self.make_client(text='{"ip": "10.0.0.1", "bogon": true}')
        record = client.lookup('10.0.0.1')
        self.assertIsNone(record.error)
        self.assertEqual(record.ip, '10.0.0.1')
        for field in ('hostname', 'city', 'region', 'country', 'loc', 'org', 'postal'):
            self.assertEqual(getattr(record, field), '')

    def test_lookup_rate_limit(self):
        """Test lookup() reports rate limiting distinctly"""
        body = '{"status": 429, "error": {"title": "Rate limit exceeded"}}'
        record = self.make_client(status_code=429, text=body).lookup('8.8.8.8')
        self.assertIsInstance(record.error, RateLimitError)
        self.assertEqual(record.ip, '8.8.8.8')
        self.assertEqual(record.city, '')

    def test_lookup_invalid_ip(self):
        """Test lookup() turns an invalid IP response into sentinel fields"""
        body = '{"error": {"title": "Wrong ip", "message": "Please provide a valid IP address"}}'
        record = self.make_client(status_code=404, text=body).lookup('999.1.1.1')
        self.assertIsNone(record.error)
        self.assertEqual(record.ip, '999.1.1.1')
        self.assertEqual(record.hostname, 'Invalid IP')
        self.assertEqual(record.city, 'N/A')
        self.assertEqual(record.loc, 'N/A')

    def test_lookup_http_error(self):
        """Test lookup() with a non-2xx status"""
        record = self.make_client(status_code=503, text='Service Unavailable').lookup('8.8.8.8')
        self.assertIsInstance(record.error, GeolocationError)
        self.assertNotIsInstance(record.error, RateLimitError)
        self.assertIn('HTTP 503', str(record.error))

    def test_lookup_transport_error(self):
        """Test lookup() with a connection error or timeout"""
        for exc in (requests.ConnectionError('connection refused'), requests.Timeout('read timed out')):
            with self.subTest(exc=exc):
                record = self.make_client(side_effect=exc).lookup('8.8.8.8')
                self.assertIsInstance(record.error, GeolocationError)
                self.assertEqual(record.ip, '8.8.8.8')

    def test_lookup_bad_json(self):
        """Test lookup() with a 200 response that is not a JSON object"""
        for body in ('<html>oops</html>', '["8.8.8.8"]'):
            with self.subTest(body=body):
                record = self.make_client(text=body).lookup('8.8.8.8')
                self.assertIsInstance(record.error, GeolocationError)

    def test_lookup_self(self):
        """Test lookup_self() queries the caller's own location"""
        client = self.make_client(text=json.dumps(self.GOOGLE_DNS))
        record = lookup_self(client)
        client.session.get.assert_called_once_with('https://ipinfo.example/json', timeout=10.0)
        self.assertEqual(record.ip, '8.8.8.8')
        self.assertEqual(record.loc, '37.4056,-122.0775')

    def test_lookup_self_failure(self):
        """Test lookup_self() raises SelfLocationError instead of defaulting"""
        with self.assertRaises(SelfLocationError):
            lookup_self(self.make_client(side_effect=requests.ConnectionError('offline')))
        with self.assertRaises(SelfLocationError):
            lookup_self(self.make_client(text='{"ip": "192.0.2.1"}'))

    def test_geolocate_all(self):
        """Test geolocate_all() issues one request per IP and keeps order"""
        lock = threading.Lock()
        requested = []

        def fake_get(url, timeout):
            ip = url.split('/')[3]
            with lock:
                requested.append(ip)
            if ip == '192.0.2.99':
                raise requests.ConnectionError('unreachable')
            return mock.Mock(status_code=200, text=json.dumps({'ip': ip, 'loc': '1.0,2.0'}))
        client = self.make_client(side_effect=fake_get)
        ips = [f'192.0.2.{n}' for n in range(1, 20)] + ['192.0.2.99']
        records = geolocate_all(client, ips, 30, progress=False)
        self.assertCountEqual(requested, ips)
        self.assertEqual(len(requested), len(ips))
        self.assertEqual([record.ip for record in records], ips)
        self.assertEqual(len(failed_records(records)), 1)
        self.assertEqual(failed_records(records)[0].ip, '192.0.2.99')

    def test_geolocate_all_rate_limit(self):
        """Test exhausted quota is logged as an error, distinct from other failures"""
        body = '{"status": 429, "error": {"title": "Rate limit exceeded"}}'
        client = self.make_client(status_code=429, text=body)
        with self.assertLogs(level='WARNING') as logs:
            records = geolocate_all(client, ['192.0.2.1', '192.0.2.2'], 30, progress=False)
        self.assertTrue(all(isinstance(record.error, RateLimitError) for record in records))
        errors = [line for line in logs.output if line.startswith('ERROR:')]
        self.assertEqual(len(errors), 1)
        self.assertIn('rate limit exceeded for 2 of 2 lookups', errors[0])
        self.assertFalse([line for line in logs.output if line.startswith('WARNING:')])

    def test_geolocate_all_empty(self):
        """Test geolocate_all() with no IPs makes no request"""
        client = self.make_client()
        self.assertEqual(geolocate_all(client, [], 30, progress=False), [])
        client.session.get.assert_not_called()


def lookup_self(client: GeoClient) -> GeoRecord:
    """Return the caller's own location

    Raises SelfLocationError if the lookup fails or the location is
    unusable, since every distance is measured from it.
    """
    record = client.lookup('')
    if record.error is not None:
        raise SelfLocationError(f'could not determine your location: {record.error}') from record.error
    if parse_loc(record.loc) is None:
        raise SelfLocationError(f'could not determine your location: unusable loc {record.loc!r}')
    logging.info('your IP is %s, location %s', record.ip, record.loc)
    return record


def failed_records(records: List[GeoRecord]) -> List[GeoRecord]:
    """Return records that carry an error"""
    return [record for record in records if record.error is not None]


def geolocate_all(client: GeoClient, ips: List[str], max_workers: int,
                  progress: bool = True) -> List[GeoRecord]:
    """Geolocate unique IP addresses concurrently

    Args:
        client: GeoClient shared by the workers
        ips: unique IP addresses
        max_workers: upper bound on concurrent requests
        progress: show a progress bar

    Returns:
        exactly one GeoRecord per IP, in the order of ips

    Failures are logged after the pool completes.
    """
    start_time = time.time()
    records = run_pool(client.lookup, ips, max_workers, desc='Geolocating IPs', progress=progress)
    failures = failed_records(records)
    rate_limited = [record for record in failures if isinstance(record.error, RateLimitError)]
    for record in failures:
        if not isinstance(record.error, RateLimitError):
            logging.warning('could not geolocate %s', record.error)
    if rate_limited:
        logging.error('rate limit exceeded for %d of %d lookups; the service quota is used up',
                      len(rate_limited), len(records))
    logging.info('geolocated %s IPs in %.1fs (%s failed)',
                 f'{len(records):,}', time.time() - start_time, f'{len(failures):,}')
    return records


if __name__ == '__main__':
    unittest.main()
