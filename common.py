"""
Common functions

# Terminology
* identifier: anything the user gives on the command line: a URL
  (https://example.com/path), an email address (user@example.com),
  a hostname (example.com) or an IP literal (1.2.3.4, 1.2.3.4:8080).
* normalized identifier: the bare hostname or IP literal left after
  stripping the scheme, path, user-info and port.
* worker pool: a bounded set of threads that drains a list of items
  and hands back exactly one result per item.

# Configuration

Values that used to be module constants (the geolocation host, the
request timeout, the worker count) travel in a Config instance so
each run is explicit about them. The constants below are only the
defaults.
"""

# built-in imports
import dataclasses
import ipaddress
import logging
import re
import sys
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Tuple
from unittest import mock

# third-party imports
from tqdm import tqdm

# Constants
VERSION = '1.4.0'
DEFAULT_WORKERS = 30
DEFAULT_SERVICE_HOST = 'ipinfo.io'
REQUEST_TIMEOUT = 10.0  # seconds
NOT_AVAILABLE = 'N/A'
DISTANCE_FORMULAS = ('haversine', 'vincenty')
IPV4_WITH_PORT_RE = re.compile(r'^\d{1,3}(?:\.\d{1,3}){3}:')


# Exceptions


class GeolocationError(Exception):
    """A geolocation lookup for one IP address failed"""

    def __init__(self, ip: str, message: str):
        super().__init__(f'{ip or "self"}: {message}')
        self.ip = ip
        self.message = message


class RateLimitError(GeolocationError):
    """The geolocation service refused the request because the quota is used up"""


class SelfLocationError(Exception):
    """The caller's own location could not be determined

    Every distance in a run is measured from this location, so this
    is fatal to the run.
    """


# Classes


@dataclasses.dataclass
class Config:
    """Run parameters for one invocation

    merge_rows, one_row_per_entry and wrap_width only affect how the
    table is printed. external_ip_only skips both worker pools.
    """
    workers: int = DEFAULT_WORKERS
    service_host: str = DEFAULT_SERVICE_HOST
    timeout: float = REQUEST_TIMEOUT
    nameservers: Tuple[str, ...] = ()
    distance_formula: str = 'haversine'
    merge_rows: bool = False
    one_row_per_entry: bool = False
    wrap_width: int = 0
    external_ip_only: bool = False
    progress: bool = True

    def __post_init__(self):
        if self.workers < 1:
            raise ValueError(f'workers must be at least 1, not {self.workers}')
        if self.timeout <= 0:
            raise ValueError(f'timeout must be positive, not {self.timeout}')
        if self.distance_formula not in DISTANCE_FORMULAS:
            raise ValueError(f'unknown distance formula: {self.distance_formula}')
        if self.wrap_width < 0:
            raise ValueError(f'wrap width must not be negative, not {self.wrap_width}')
        self.nameservers = tuple(self.nameservers)
        for nameserver in self.nameservers:
            if not is_ip_literal(nameserver):
                raise ValueError(f'nameserver must be an IP address, not {nameserver!r}')


class TestCommon(unittest.TestCase):
    """Test common functions"""

    def test_normalize_identifier(self):
        """Test normalize_identifier() with every kind of identifier"""
        test_cases = (
            ('https://cisco.com', 'cisco.com'),
            ('https://www.example.com/a/b/c?d=1', 'www.example.com'),
            ('http://example.com:8080/index.html', 'example.com:8080'),
            ('ftp://ftp.example.org/', 'ftp.example.org'),
            ('user@github.com', 'github.com'),
            ('a@b@example.net', 'b@example.net'),
            ('1.2.3.4:8080', '1.2.3.4'),
            ('1.2.3.4', '1.2.3.4'),
            ('example.com', 'example.com'),
            ('example.com:443', 'example.com:443'),
            ('2001:db8::1', '2001:db8::1'),
            ('', ''),
            ('not a hostname', 'not a hostname'),
        )
        for raw, expected in test_cases:
            with self.subTest(raw=raw):
                self.assertEqual(normalize_identifier(raw), expected)

    def test_normalize_all(self):
        """Test normalize_all() keeps order and collapses duplicates"""
        raws = ['https://github.com', 'user@github.com', '1.2.3.4',
                'https://github.com', '1.2.3.4:22']
        ret = normalize_all(raws)
        self.assertEqual(list(ret), ['github.com', '1.2.3.4'])
        self.assertEqual(ret['github.com'], ['https://github.com', 'user@github.com'])
        self.assertEqual(ret['1.2.3.4'], ['1.2.3.4', '1.2.3.4:22'])
        self.assertEqual(normalize_all([]), {})

    def test_is_ipv4(self):
        """Test is_ipv4() and is_ip_literal()"""
        self.assertTrue(is_ipv4('1.2.3.4'))
        self.assertFalse(is_ipv4('2001:db8::1'))
        self.assertFalse(is_ipv4('example.com'))
        self.assertFalse(is_ipv4('1.2.3.4:80'))
        self.assertTrue(is_ip_literal('2001:db8::1'))
        self.assertTrue(is_ip_literal('1.2.3.4'))
        self.assertFalse(is_ip_literal('example.com'))

    def test_effective_workers(self):
        """Test effective_workers() never exceeds the item count"""
        self.assertEqual(effective_workers(30, 2), 2)
        self.assertEqual(effective_workers(2, 30), 2)
        self.assertEqual(effective_workers(30, 0), 0)
        self.assertEqual(effective_workers(1, 1), 1)

    def test_run_pool_order_and_count(self):
        """Test run_pool() returns one result per item in input order"""
        items = list(range(50))

        def slow_square(n):
            time.sleep(0.001 * ((50 - n) % 7))
            return n * n
        ret = run_pool(slow_square, items, 8, progress=False)
        self.assertEqual(ret, [n * n for n in items])

    def test_run_pool_empty(self):
        """Test run_pool() with no items spawns no workers"""
        with mock.patch.object(sys.modules[__name__], 'ThreadPoolExecutor') as executor_class:
            ret = run_pool(lambda item: item, [], 30, progress=False)
        self.assertEqual(ret, [])
        executor_class.assert_not_called()

    def test_run_pool_worker_count(self):
        """Test run_pool() starts min(max_workers, len(items)) workers"""
        with mock.patch.object(sys.modules[__name__], 'ThreadPoolExecutor', wraps=ThreadPoolExecutor) as executor_class:
            run_pool(lambda item: item, ['a.example', 'b.example'], 30, progress=False)
        executor_class.assert_called_once_with(max_workers=2)

    def test_run_pool_threads(self):
        """Test run_pool() never runs more threads than max_workers"""
        lock = threading.Lock()
        state = {'active': 0, 'peak': 0}

        def work(item):
            with lock:
                state['active'] += 1
                state['peak'] = max(state['peak'], state['active'])
            time.sleep(0.01)
            with lock:
                state['active'] -= 1
            return item
        run_pool(work, list(range(20)), 3, progress=False)
        self.assertLessEqual(state['peak'], 3)
        self.assertGreaterEqual(state['peak'], 1)

    def test_run_pool_interrupt(self):
        """Test an interrupt cancels the items still queued"""
        lock = threading.Lock()
        started = []

        def work(item):
            with lock:
                started.append(item)
            if item == 0:
                raise KeyboardInterrupt
            time.sleep(0.2)
            return item
        start_time = time.time()
        with self.assertRaises(KeyboardInterrupt):
            run_pool(work, list(range(20)), 2, progress=False)
        self.assertLess(time.time() - start_time, 1.0)
        # Let the items already running finish before counting.
        time.sleep(0.5)
        self.assertLess(len(started), 10)
        self.assertNotIn(19, started)

    def test_config(self):
        """Test Config defaults and validation"""
        config = Config()
        self.assertEqual(config.workers, DEFAULT_WORKERS)
        self.assertEqual(config.service_host, 'ipinfo.io')
        self.assertEqual(config.timeout, 10.0)
        self.assertEqual(Config(nameservers=['9.9.9.9']).nameservers, ('9.9.9.9',))
        self.assertEqual(Config(nameservers=['2620:fe::fe']).nameservers, ('2620:fe::fe',))
        for kwargs in ({'workers': 0}, {'timeout': 0}, {'distance_formula': 'flat'}, {'wrap_width': -1},
                       {'nameservers': ['not-an-ip']}, {'nameservers': ['9.9.9.9', 'dns.example']}):
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ValueError):
                    Config(**kwargs)

    def test_exceptions(self):
        """Test exception hierarchy and messages"""
        e = RateLimitError('1.2.3.4', 'Rate limit exceeded')
        self.assertIsInstance(e, GeolocationError)
        self.assertEqual(e.ip, '1.2.3.4')
        self.assertEqual(str(e), '1.2.3.4: Rate limit exceeded')
        self.assertEqual(str(GeolocationError('', 'HTTP 500')), 'self: HTTP 500')


# Functions


def setup_logging(verbose: bool = False):
    """Configure the root logger

    Messages go to stderr so they do not mix with the table on stdout.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level,
                        format='%(asctime)s %(levelname)s %(message)s',
                        datefmt='%H:%M:%S',
                        stream=sys.stderr,
                        force=True)


def get_progress(total: int, desc: Optional[str] = None, disable: bool = False) -> tqdm:
    """Return a progress bar on stderr"""
    return tqdm(total=total, desc=desc, unit='item', file=sys.stderr,
                leave=False, disable=disable)


def is_ip_literal(value: str) -> bool:
    """Return True if value is an IPv4 or IPv6 address"""
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def is_ipv4(value: str) -> bool:
    """Return True if value is an IPv4 address"""
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def normalize_identifier(raw: str) -> str:
    """Strip URL, email and port wrapping from one identifier

    Examples:
    >>> normalize_identifier('https://example.com/index.html')
    'example.com'
    >>> normalize_identifier('user@example.com')
    'example.com'
    >>> normalize_identifier('1.2.3.4:8080')
    '1.2.3.4'

    Anything else is returned unchanged. Nothing is validated here:
    a malformed identifier fails later, at DNS resolution.
    """
    if '://' in raw:
        return raw.split('/', 3)[2]
    if '@' in raw:
        return raw.split('@', 1)[1]
    if IPV4_WITH_PORT_RE.match(raw):
        return raw.split(':', 1)[0]
    return raw


def normalize_all(raws: List[str]) -> Dict[str, List[str]]:
    """Normalize identifiers

    Returns a dict with the normalized identifier as key and the
    distinct raw identifiers that produced it as value. Both keys
    and values keep the order of first appearance.
    """
    origins: Dict[str, List[str]] = {}
    for raw in raws:
        normalized = normalize_identifier(raw)
        raw_list = origins.setdefault(normalized, [])
        if raw not in raw_list:
            raw_list.append(raw)
    return origins


def effective_workers(max_workers: int, count: int) -> int:
    """Return how many workers to start for count items"""
    return max(0, min(max_workers, count))


def run_pool(func: Callable, items: list, max_workers: int,
             desc: Optional[str] = None, progress: bool = True) -> list:
    """Run func on every item with a bounded pool of threads

    Args:
        func: called once per item in a worker thread. It must report
            failures in its return value instead of raising.
        items: work items
        max_workers: upper bound on the number of threads
        desc: label for the progress bar
        progress: show the progress bar

    Returns:
        list with exactly one result per item, in the order of items
        (not in completion order)

    If the wait is interrupted (KeyboardInterrupt), items that have
    not started are cancelled and the exception propagates.
    """
    assert max_workers >= 1, 'max_workers must be at least 1'
    if not items:
        return []
    workers = effective_workers(max_workers, len(items))
    logging.debug('starting %d workers for %d items', workers, len(items))
    results = [None] * len(items)
    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = {executor.submit(func, item): idx for idx, item in enumerate(items)}
        with get_progress(len(items), desc, disable=not progress) as pbar:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
                pbar.update(1)
    except BaseException:
        # Ctrl-C: drop queued items instead of draining the queue.
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)
    return results


if __name__ == '__main__':
    unittest.main()
