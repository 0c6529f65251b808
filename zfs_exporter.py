#!/usr/bin/env python3

"""
Expose ZFS pool health, capacity and snapshot freshness as Prometheus metrics.

Pools, datasets and snapshot patterns are resolved once at startup from the
configuration file plus `zpool list` / `zfs list`. Every interval the exporter
re-reads capacity and health for each of them and, for each snapshot pattern a
dataset watches, the creation time of the newest snapshot per pattern label.

Snapshot patterns are regular expressions that must define the named groups
`id` and `label`, e.g.

    snapshots:
      - name: autosnap
        match: '^autosnap_(?P<id>\\d{4}-\\d{2}-\\d{2}_\\d{2}:\\d{2}:\\d{2})_(?P<label>\\w+)$'

Gauges of datasets, pools or labels that disappear are not removed; they keep
their last value until the exporter restarts.
"""

import argparse
import logging
import os
import re
import subprocess
import sys
import time
from dataclasses import dataclass, field, fields
from prometheus_client import CollectorRegistry, Gauge, generate_latest, start_http_server
import yaml

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG = '/etc/prometheus/zfs-exporter.yml'
DEFAULT_LISTEN = '[::1]:9150'
DEFAULT_INTERVAL = 60_000

NAMESPACE = 'zfs'

LIST_POOLS = ('zpool', 'list', '-H', '-o', 'name')
LIST_FILESYSTEMS = ('zfs', 'list', '-H', '-o', 'name', '-t', 'filesystem')

INTEGER_RE = re.compile(r'[+-]?[0-9]+')


class Error(Exception):
    pass


class ConfigError(Error):
    pass


class CommandError(Error):
    pass


class ParseError(Error):
    pass


def run(cmd: tuple[str, ...]) -> list[str]:
    """Run a command and return its trimmed, non-empty stdout lines.

    Raises:
        CommandError: the command could not be started or exited non-zero.
    """
    LOG.debug('Running %s', ' '.join(cmd))
    try:
        popen = subprocess.Popen(
            cmd, stdout=subprocess.PIPE, env=dict(os.environ, LC_ALL='C')
        )
    except OSError as e:
        raise CommandError(f'Cannot execute {cmd[0]}: {e}') from e

    stdout, _ = popen.communicate()
    if popen.returncode != 0:
        raise CommandError(f'{" ".join(cmd)} returned exit code {popen.returncode}')

    lines = (line.strip() for line in stdout.decode('utf-8', errors='replace').splitlines())
    return [line for line in lines if line]


# Configuration


@dataclass
class SnapshotConfig:
    name: str
    match: str


@dataclass
class DatasetConfig:
    name: str
    snapshots: list[str] = field(default_factory=list)
    recurse: bool = False


@dataclass
class PoolConfig:
    name: str


@dataclass
class Config:
    snapshots: list[SnapshotConfig] = field(default_factory=list)
    datasets: list[DatasetConfig] = field(default_factory=list)
    pools: list[PoolConfig] = field(default_factory=list)
    listen: str = DEFAULT_LISTEN
    all_pools: bool = True
    all_datasets: bool = True
    interval: int = DEFAULT_INTERVAL

    @classmethod
    def read(cls, path) -> 'Config':
        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f'Cannot read config file at `{path}`: {e}') from e
        except yaml.YAMLError as e:
            raise ConfigError(f'Cannot decode YAML file `{path}`: {e}') from e
        except UnicodeDecodeError as e:
            raise ConfigError(f'Cannot decode config file `{path}`: {e}') from e

        return cls.from_dict(data if data is not None else {})

    @classmethod
    def from_dict(cls, data) -> 'Config':
        if not isinstance(data, dict):
            raise ConfigError('Configuration must be a mapping')

        unknown = sorted(set(data) - {f.name for f in fields(cls)})
        if unknown:
            raise ConfigError(f'Unknown configuration keys: {", ".join(unknown)}')

        scalars = {key: data[key] for key in ('listen', 'all_pools', 'all_datasets', 'interval') if key in data}
        try:
            config = cls(
                snapshots=[SnapshotConfig(**s) for s in data.get('snapshots') or []],
                datasets=[DatasetConfig(**d) for d in data.get('datasets') or []],
                pools=[PoolConfig(**p) for p in data.get('pools') or []],
                **scalars,
            )
        except TypeError as e:
            raise ConfigError(f'Invalid configuration: {e}') from e

        config.validate()
        return config

    def validate(self):
        for snapshot in self.snapshots:
            _expect(isinstance(snapshot.name, str), f'Snapshot name must be a string: {snapshot.name!r}')
            _expect(isinstance(snapshot.match, str), f'Snapshot {snapshot.name} match must be a string')
        for dataset in self.datasets:
            _expect(isinstance(dataset.name, str), f'Dataset name must be a string: {dataset.name!r}')
            _expect(isinstance(dataset.snapshots, list) and all(isinstance(s, str) for s in dataset.snapshots),
                    f'Dataset {dataset.name} snapshots must be a list of names')
            _expect(isinstance(dataset.recurse, bool), f'Dataset {dataset.name} recurse must be a boolean')
        for pool in self.pools:
            _expect(isinstance(pool.name, str), f'Pool name must be a string: {pool.name!r}')
        _expect(isinstance(self.all_pools, bool), 'all_pools must be a boolean')
        _expect(isinstance(self.all_datasets, bool), 'all_datasets must be a boolean')
        _expect(isinstance(self.interval, int) and not isinstance(self.interval, bool) and self.interval > 0,
                f'interval must be a positive number of milliseconds: {self.interval!r}')
        _expect(isinstance(self.listen, str), f'listen must be a string: {self.listen!r}')
        parse_listen(self.listen)


def _expect(condition, message):
    if not condition:
        raise ConfigError(message)


def parse_listen(listen: str) -> tuple[str, int]:
    """Split `host:port` (IPv6 hosts in brackets) into an address and a port."""
    host, sep, port = listen.rpartition(':')
    if not sep or not host or not INTEGER_RE.fullmatch(port):
        raise ConfigError(f'Invalid listen address `{listen}`')

    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    elif ':' in host:
        raise ConfigError(f'Invalid listen address `{listen}`, IPv6 addresses must be bracketed')

    port = int(port)
    if not 0 < port < 65536:
        raise ConfigError(f'Invalid listen port in `{listen}`')
    return host, port


# Inventory


@dataclass(frozen=True)
class SnapshotPattern:
    name: str
    regex: re.Pattern


@dataclass(frozen=True)
class Dataset:
    name: str
    snapshots: tuple[str, ...] = ()


@dataclass(frozen=True)
class Pool:
    name: str


@dataclass(frozen=True)
class Inventory:
    pools: dict[str, Pool]
    datasets: dict[str, Dataset]
    snapshots: dict[str, SnapshotPattern]


def compile_snapshot_patterns(configs: list[SnapshotConfig]) -> dict[str, SnapshotPattern]:
    patterns = {}
    for snapshot in configs:
        try:
            regex = re.compile(snapshot.match)
        except re.error as e:
            raise ConfigError(f'Cannot parse snapshot match regex of {snapshot.name}: {e}') from e
        patterns[snapshot.name] = SnapshotPattern(snapshot.name, regex)
    return patterns


def resolve_inventory(config: Config, run=run) -> Inventory:
    """Resolve the pools, datasets and snapshot patterns to watch.

    Explicitly configured entries replace auto-discovered ones of the same
    name. A recursive dataset entry assigns its snapshot patterns to every
    filesystem below it, itself included.

    Raises:
        ConfigError: a regex does not compile or a dataset references an
            undefined snapshot pattern.
        CommandError: a discovery command failed.
    """
    snapshots = compile_snapshot_patterns(config.snapshots)

    pools = {}
    if config.all_pools:
        for name in run(LIST_POOLS):
            pools[name] = Pool(name)
    for pool in config.pools:
        pools[pool.name] = Pool(pool.name)

    datasets = {}
    if config.all_datasets:
        for name in run(LIST_FILESYSTEMS):
            datasets[name] = Dataset(name)

    for entry in config.datasets:
        for ref in entry.snapshots:
            if ref not in snapshots:
                raise ConfigError(f'Snapshot {ref} not defined')

        watched = tuple(dict.fromkeys(entry.snapshots))
        if entry.recurse:
            for name in run(LIST_FILESYSTEMS + ('-r', entry.name)):
                datasets[name] = Dataset(name, watched)
        datasets[entry.name] = Dataset(entry.name, watched)

    LOG.info('Watching %d pools, %d datasets, %d snapshot patterns', len(pools), len(datasets), len(snapshots))
    return Inventory(pools=pools, datasets=datasets, snapshots=snapshots)


# Output parsing


def parse_int(value: str, line: str) -> int:
    if not INTEGER_RE.fullmatch(value):
        raise ParseError(f'Cannot parse integer {value!r} in line {line!r}')
    return int(value)


def parse_snapshot_line(line: str) -> tuple[str, str, int]:
    """Parse a `name<TAB>creation` row into (dataset, short name, creation)."""
    columns = line.split('\t')
    if len(columns) < 2:
        raise ParseError(f'Cannot parse snapshot line {line!r}')

    parts = columns[0].split('@')
    if len(parts) != 2:
        raise ParseError(f'Cannot parse snapshot name {columns[0]!r}')

    return parts[0], parts[1], parse_int(columns[1], line)


def match_snapshot(pattern: SnapshotPattern, short_name: str) -> str | None:
    """Return the `label` capture of a matching snapshot name, None otherwise."""
    m = pattern.regex.search(short_name)
    if m is None:
        return None

    groups = m.groupdict()
    if groups.get('id') is None:
        raise ParseError(f'No id capture in snapshot match regex of {pattern.name}')
    if groups.get('label') is None:
        raise ParseError(f'No label capture in snapshot match regex of {pattern.name}')
    return groups['label']


def latest_snapshot_timestamps(lines, pattern: SnapshotPattern) -> dict[str, int]:
    latest = {}
    for line in lines:
        _, short_name, creation = parse_snapshot_line(line)
        label = match_snapshot(pattern, short_name)
        if label is None:
            continue
        latest[label] = max(creation, latest.get(label, creation))
    return latest


def parse_dataset_stats(lines) -> tuple[int, int]:
    """Parse `zfs get -H -p used,available` rows into (used, available)."""
    used = available = 0
    for line in lines:
        columns = line.split('\t')
        if len(columns) < 3:
            raise ParseError(f'Cannot parse property line {line!r}')

        value = parse_int(columns[2], line)
        if columns[1] == 'used':
            used = value
        elif columns[1] == 'available':
            available = value
    return used, available


HEALTH_CODES = {
    'ONLINE': 0,
    'DEGRADED': 1,
    'FAULTED': 2,
    'OFFLINE': 3,
    'UNAVAIL': 4,
    'REMOVED': 5,
    'SUSPENDED': 6,
}


def pool_health_code(health: str) -> int:
    return HEALTH_CODES.get(health, -1)


@dataclass(frozen=True)
class PoolStats:
    size: int
    allocated: int
    free: int
    health: int


def parse_pool_stats(lines) -> PoolStats:
    """Parse the single `size<TAB>alloc<TAB>free<TAB>health` row of a pool."""
    if len(lines) != 1:
        raise ParseError(f'Expected exactly one pool line, got {len(lines)}')

    line = lines[0]
    columns = line.split('\t')
    if len(columns) < 4:
        raise ParseError(f'Cannot parse pool line {line!r}')

    size, allocated, free = (parse_int(value, line) for value in columns[:3])
    return PoolStats(size=size, allocated=allocated, free=free, health=pool_health_code(columns[3]))


# Metrics

METRICS = (
    ('dataset_latest_snapshot_timestamp_seconds',
     'time in seconds since EPOCH of latest snapshot matching expression', ('dataset', 'name')),
    ('dataset_used_bytes', 'used bytes on dataset', ('dataset',)),
    ('dataset_available_bytes', 'available bytes on dataset', ('dataset',)),
    ('pool_health',
     'zfs pool status, [0: ONLINE, 1: DEGRADED, 2: FAULTED, 3: OFFLINE, 4: UNAVAIL, 5: REMOVED, 6: SUSPENDED]',
     ('pool',)),
    ('pool_allocated_bytes', 'zfs allocated bytes', ('pool',)),
    ('pool_free_bytes', 'zfs free bytes', ('pool',)),
    ('pool_size_bytes', 'zfs size bytes', ('pool',)),
)


class Metrics:
    """Registry of the exporter's gauges, all registered up front."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = CollectorRegistry() if registry is None else registry
        self.gauges = {
            name: Gauge(name, doc, labelnames=labelnames, namespace=NAMESPACE, registry=self.registry)
            for (name, doc, labelnames) in METRICS
        }

    def set(self, name: str, label_values, value: int):
        self.gauges[name].labels(*label_values).set(value)


# Scraping


class Scraper:
    def __init__(self, inventory: Inventory, metrics: Metrics, run=run):
        self.inventory = inventory
        self.metrics = metrics
        self.run = run

    @classmethod
    def from_config(cls, config: Config, metrics: Metrics, run=run) -> 'Scraper':
        return cls(resolve_inventory(config, run), metrics, run)

    def update(self):
        """Run one full pass over all datasets and pools.

        The first error aborts the pass; gauges set before it keep their
        new values.
        """
        start = time.monotonic()
        for dataset in self.inventory.datasets.values():
            self.update_dataset(dataset)
        for pool in self.inventory.pools.values():
            self.update_pool(pool)
        LOG.debug('Scrape finished in %.3fs', time.monotonic() - start)

    def update_dataset(self, dataset: Dataset):
        used, available = self.read_dataset_stats(dataset.name)
        self.metrics.set('dataset_used_bytes', (dataset.name,), used)
        self.metrics.set('dataset_available_bytes', (dataset.name,), available)

        for ref in dataset.snapshots:
            pattern = self.inventory.snapshots[ref]
            lines = self.run(('zfs', 'list', '-H', '-o', 'name,creation', '-p', '-t', 'snapshot', dataset.name))
            for label, creation in latest_snapshot_timestamps(lines, pattern).items():
                self.metrics.set('dataset_latest_snapshot_timestamp_seconds', (dataset.name, label), creation)

    def update_pool(self, pool: Pool):
        stats = self.read_pool_stats(pool.name)
        self.metrics.set('pool_size_bytes', (pool.name,), stats.size)
        self.metrics.set('pool_allocated_bytes', (pool.name,), stats.allocated)
        self.metrics.set('pool_free_bytes', (pool.name,), stats.free)
        self.metrics.set('pool_health', (pool.name,), stats.health)

    def read_dataset_stats(self, name: str) -> tuple[int, int]:
        return parse_dataset_stats(self.run(('zfs', 'get', '-H', 'used,available', '-p', name)))

    def read_pool_stats(self, name: str) -> PoolStats:
        return parse_pool_stats(self.run(('zpool', 'list', '-p', '-H', '-o', 'size,alloc,free,health', name)))


def serve(scraper: Scraper, interval: float, sleep=time.sleep):
    """Scrape forever, waiting `interval` seconds after each pass."""
    while True:
        try:
            scraper.update()
        except Error as e:
            LOG.error('Scrape failed: %s', e)
        sleep(interval)


def main(argv=None):
    if argv is None:
        argv = sys.argv

    parser = argparse.ArgumentParser(
        prog=os.path.basename(argv[0]),
        description='Expose ZFS pool, dataset and snapshot metrics to Prometheus.',
    )
    parser.add_argument('-c', '--config', default=DEFAULT_CONFIG, metavar='PATH',
                        help=f'Configuration file (default: {DEFAULT_CONFIG})')
    parser.add_argument('--once', action='store_true',
                        help='Scrape once and print the metrics to stdout instead of serving them')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log every command that is run')
    args = parser.parse_args(argv[1:])

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    try:
        config = Config.read(args.config)
        metrics = Metrics()
        scraper = Scraper.from_config(config, metrics, run)
    except Error as e:
        LOG.error('Cannot start: %s', e)
        return 1

    if args.once:
        try:
            scraper.update()
        except Error as e:
            LOG.error('Scrape failed: %s', e)
            return 1
        print(generate_latest(metrics.registry).decode(), end='')
        return 0

    addr, port = parse_listen(config.listen)
    try:
        start_http_server(port, addr=addr, registry=metrics.registry)
    except OSError as e:
        LOG.error('Cannot listen on %s: %s', config.listen, e)
        return 1
    LOG.info('Listening on %s', config.listen)

    serve(scraper, config.interval / 1000)
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv))
