#!/usr/bin/env python3
"""
Join geolocation records back to the user's identifiers and print them

# Placeholder location

When ipinfo.io cannot place an address it answers with a fixed point
near the geographic center of the contiguous United States,
PLACEHOLDER_LOC. That point is treated exactly like a missing loc:
city, region, loc and distance become 'N/A'. If the service changes
its fallback point, PLACEHOLDER_LOC has to follow.
"""

# built-in import
import dataclasses
import logging
import textwrap
import unittest
from typing import Dict, List, Optional, Tuple

# local import
from common import NOT_AVAILABLE, GeolocationError
from distance import distance_miles, parse_loc
from geolocate import GeoRecord

PLACEHOLDER_LOC = '37.7510,-97.8220'
COLUMNS = ('Input', 'IP', 'Hostname', 'Org', 'City', 'Region', 'Country', 'Loc', 'Distance')
COLUMN_GAP = '  '


@dataclasses.dataclass
class ReportRow:
    """One line of the report: one identifier joined with one IP's location"""
    identifier: str
    ip: str
    hostname: str
    org: str
    city: str
    region: str
    country: str
    loc: str
    distance: str

    def cells(self) -> List[str]:
        """Return the values in COLUMNS order"""
        return [self.identifier, self.ip, self.hostname, self.org, self.city,
                self.region, self.country, self.loc, self.distance]


class TestReport(unittest.TestCase):
    """Test report building and rendering"""

    SELF_LOC = '39.0481,-77.4728'

    @staticmethod
    def record(ip, loc='37.3382,-121.8863', **kwargs):
        """Return a GeoRecord with defaults for a San Jose address"""
        values = dict(hostname=f'host-{ip}', city='San Jose', region='California',
                      country='US', org='AS64500 Example', postal='95113')
        values.update(kwargs)
        return GeoRecord(ip=ip, loc=loc, **values)

    def test_build_report_distance(self):
        """Test build_report() computes distances from the caller"""
        rows, failures = build_report([self.record('192.0.2.1')],
                                      {'192.0.2.1': ['example.com']}, self.SELF_LOC)
        self.assertEqual(failures, [])
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row.identifier, 'example.com')
        self.assertEqual(row.city, 'San Jose')
        self.assertAlmostEqual(float(row.distance), 2393.6, delta=2)
        self.assertRegex(row.distance, r'^\d+\.\d\d$')

    def test_build_report_placeholder(self):
        """Test placeholder and missing locations give N/A, never a distance"""
        records = [self.record('192.0.2.1', loc=PLACEHOLDER_LOC),
                   self.record('192.0.2.2', loc=''),
                   self.record('192.0.2.3', loc='garbage')]
        ip_index = {'192.0.2.1': ['a.example'], '192.0.2.2': ['b.example'], '192.0.2.3': ['c.example']}
        rows, _failures = build_report(records, ip_index, self.SELF_LOC)
        self.assertEqual(len(rows), 3)
        for row in rows:
            with self.subTest(identifier=row.identifier):
                self.assertEqual(row.distance, 'N/A')
                self.assertEqual(row.city, 'N/A')
                self.assertEqual(row.region, 'N/A')
                self.assertEqual(row.loc, 'N/A')
                self.assertEqual(row.country, 'US')

    def test_build_report_filters(self):
        """Test IPv6 records are dropped and failed records are returned"""
        error = GeolocationError('192.0.2.9', 'HTTP 500')
        records = [self.record('2001:db8::1'),
                   GeoRecord(ip='192.0.2.9', error=error),
                   self.record('192.0.2.1')]
        ip_index = {'2001:db8::1': ['example.com'], '192.0.2.9': ['example.org'],
                    '192.0.2.1': ['example.com']}
        rows, failures = build_report(records, ip_index, self.SELF_LOC)
        self.assertEqual([row.ip for row in rows], ['192.0.2.1'])
        self.assertEqual(failures, [records[1]])

    def test_build_report_fan_out(self):
        """Test one row per identifier of an IP, sorted by identifier"""
        records = [self.record('192.0.2.2'), self.record('192.0.2.1')]
        ip_index = {'192.0.2.1': ['https://cisco.com', '1.2.3.4'],
                    '192.0.2.2': ['user@github.com', 'https://cisco.com']}
        rows, _failures = build_report(records, ip_index, self.SELF_LOC)
        self.assertEqual([(row.identifier, row.ip) for row in rows],
                         [('1.2.3.4', '192.0.2.1'),
                          ('https://cisco.com', '192.0.2.2'),
                          ('https://cisco.com', '192.0.2.1'),
                          ('user@github.com', '192.0.2.2')])

    def test_build_report_orphan(self):
        """Test a record no identifier maps to is warned about, not fatal"""
        with self.assertLogs(level='WARNING') as logs:
            rows, _failures = build_report([self.record('192.0.2.1')], {}, self.SELF_LOC)
        self.assertEqual(rows, [])
        self.assertIn('192.0.2.1', logs.output[0])

    def test_build_report_invalid_ip(self):
        """Test the invalid IP sentinel record is reported with N/A fields"""
        rows, failures = build_report([GeoRecord.invalid_ip('999.1.1.1')],
                                      {'999.1.1.1': ['999.1.1.1']}, self.SELF_LOC)
        self.assertEqual(failures, [])
        self.assertEqual(rows[0].hostname, 'Invalid IP')
        self.assertEqual(rows[0].distance, 'N/A')

    def test_build_report_vincenty(self):
        """Test Vincenty distances and the unavailable case"""
        records = [self.record('192.0.2.1'), self.record('192.0.2.2', loc=self.SELF_LOC)]
        ip_index = {'192.0.2.1': ['a.example'], '192.0.2.2': ['b.example']}
        rows, _failures = build_report(records, ip_index, self.SELF_LOC, formula='vincenty')
        self.assertAlmostEqual(float(rows[0].distance), 2393, delta=25)
        self.assertEqual(rows[1].distance, 'N/A')
        self.assertEqual(rows[1].city, 'San Jose')

    def test_build_report_bad_self_loc(self):
        """Test build_report() refuses an unusable reference location"""
        with self.assertRaises(ValueError):
            build_report([], {}, '')

    def sample_rows(self):
        """Return rows where two identifiers share one IP"""
        return [
            ReportRow('a.example', '192.0.2.1', 'h1', 'AS1 One', 'Austin', 'Texas', 'US', '30.2,-97.7', '1.00'),
            ReportRow('a.example', '192.0.2.2', 'h2', 'AS1 One', 'Austin', 'Texas', 'US', '30.2,-97.7', '1.00'),
            ReportRow('b.example', '192.0.2.1', 'h1', 'AS1 One', 'Austin', 'Texas', 'US', '30.2,-97.7', '1.00'),
        ]

    def test_render_table(self):
        """Test render_table() prints a header and one line per row"""
        lines = render_table(self.sample_rows()).splitlines()
        self.assertEqual(len(lines), 5)
        self.assertTrue(lines[0].startswith('Input'))
        self.assertTrue(lines[0].rstrip().endswith('Distance'))
        self.assertTrue(set(lines[1]) <= {'-', ' '})
        self.assertTrue(lines[2].startswith('a.example'))
        self.assertEqual(render_table([]).splitlines()[0].split(), list(COLUMNS))

    def test_one_row_per_entry(self):
        """Test one_row_per_entry keeps the first row of each identifier"""
        rows = one_row_per_identifier(self.sample_rows())
        self.assertEqual([(row.identifier, row.ip) for row in rows],
                         [('a.example', '192.0.2.1'), ('b.example', '192.0.2.1')])

    def test_merge_rows(self):
        """Test merge_rows joins identifiers that share an IP"""
        rows = merge_identical_rows(self.sample_rows())
        self.assertEqual([(row.identifier, row.ip) for row in rows],
                         [('a.example, b.example', '192.0.2.1'), ('a.example', '192.0.2.2')])
        text = render_table(self.sample_rows(), merge_rows=True)
        self.assertIn('a.example, b.example', text)

    def test_wrap(self):
        """Test wrap_width splits long cells over several lines"""
        rows = [ReportRow('a.example', '192.0.2.1', 'h1', 'AS64500 A Very Long Organization Name',
                          'Austin', 'Texas', 'US', '30.2,-97.7', '1.00')]
        lines = render_table(rows, wrap_width=10).splitlines()
        self.assertGreater(len(lines), 3)
        self.assertTrue(all('AS64500 A Very Long' not in line for line in lines))
        self.assertIn('Long', '\n'.join(lines))


def is_placeholder_loc(loc: Optional[str]) -> bool:
    """Return True if loc is missing or the service's fallback point"""
    return not loc or loc.strip() == PLACEHOLDER_LOC


def format_distance(miles: Optional[float]) -> str:
    """Format miles with two decimals, or N/A"""
    if miles is None:
        return NOT_AVAILABLE
    return f'{miles:.2f}'


def build_report(records: List[GeoRecord], ip_index: Dict[str, List[str]], self_loc: str,
                 formula: str = 'haversine') -> Tuple[List[ReportRow], List[GeoRecord]]:
    """Join geolocation records to identifiers

    Args:
        records: one GeoRecord per unique IP
        ip_index: dict with IP as key and list of identifiers as value
        self_loc: the caller's 'lat,lon', the reference for all distances
        formula: 'haversine' or 'vincenty'

    Returns:
        tuple (rows, failures)
        rows is a list of ReportRow sorted by identifier (stable)
        failures is a list of the records that carry an error

    IPv6 records are skipped.
    """
    origin = parse_loc(self_loc)
    if origin is None:
        raise ValueError(f'unusable reference location: {self_loc!r}')

    rows = []
    failures = []
    for record in records:
        if record.error is not None:
            failures.append(record)
            continue
        if ':' in record.ip:
            logging.debug('skipping IPv6 address %s', record.ip)
            continue

        coord = None if is_placeholder_loc(record.loc) else parse_loc(record.loc)
        if coord is None:
            city = region = loc = distance = NOT_AVAILABLE
        else:
            city, region, loc = record.city, record.region, record.loc
            distance = format_distance(distance_miles(origin, coord, formula))

        identifiers = ip_index.get(record.ip, [])
        if not identifiers:
            logging.warning('no input maps to %s', record.ip)
        for identifier in identifiers:
            rows.append(ReportRow(identifier=identifier, ip=record.ip, hostname=record.hostname,
                                  org=record.org, city=city, region=region, country=record.country,
                                  loc=loc, distance=distance))

    rows.sort(key=lambda row: row.identifier)
    return rows, failures


def one_row_per_identifier(rows: List[ReportRow]) -> List[ReportRow]:
    """Keep only the first row of each identifier"""
    seen = set()
    ret = []
    for row in rows:
        if row.identifier in seen:
            continue
        seen.add(row.identifier)
        ret.append(row)
    return ret


def merge_identical_rows(rows: List[ReportRow]) -> List[ReportRow]:
    """Merge rows that share an IP into one row listing every identifier"""
    merged: Dict[str, ReportRow] = {}
    for row in rows:
        if row.ip not in merged:
            merged[row.ip] = dataclasses.replace(row)
            continue
        existing = merged[row.ip]
        if row.identifier not in existing.identifier.split(', '):
            existing.identifier = f'{existing.identifier}, {row.identifier}'
    return list(merged.values())


def render_table(rows: List[ReportRow], merge_rows: bool = False,
                 one_row_per_entry: bool = False, wrap_width: int = 0) -> str:
    """Return rows as a plain text table

    merge_rows, one_row_per_entry and wrap_width are presentation
    options only; they never change which records were looked up.
    """
    if one_row_per_entry:
        rows = one_row_per_identifier(rows)
    if merge_rows:
        rows = merge_identical_rows(rows)

    def split_cell(value):
        if wrap_width and len(value) > wrap_width:
            return textwrap.wrap(value, wrap_width) or ['']
        return [value]

    table = [[split_cell(value) for value in row.cells()] for row in rows]
    widths = [len(column) for column in COLUMNS]
    for cells in table:
        for i, cell_lines in enumerate(cells):
            widths[i] = max(widths[i], max(len(line) for line in cell_lines))

    def format_line(values):
        return COLUMN_GAP.join(value.ljust(width) for value, width in zip(values, widths)).rstrip()

    lines = [format_line(COLUMNS), format_line(['-' * width for width in widths])]
    for cells in table:
        height = max(len(cell_lines) for cell_lines in cells)
        for n in range(height):
            lines.append(format_line([cell_lines[n] if n < len(cell_lines) else '' for cell_lines in cells]))
    return '\n'.join(lines)


if __name__ == '__main__':
    unittest.main()
