import fnmatch
import logging

import pytest
from redis.exceptions import DataError

from cpedict.db import StoreOption, new_db
from cpedict.models import CategorizedCpe, FetchType


def make_cpes(n, prefix='', deprecated_every=0):
    """Gera n entradas distintas espalhadas por 5 vendors e 7 produtos."""
    cpes = []
    for i in range(n):
        vendor = f"{prefix}vendor{i % 5}"
        product = f"product{i % 7}"
        cpes.append(CategorizedCpe(
            fetch_type=FetchType.NVD,
            vendor=vendor,
            product=product,
            cpe_uri=f"cpe:/a:{vendor}:{product}:{i}",
            cpe_fs=f"cpe:2.3:a:{vendor}:{product}:{i}:*:*:*:*:*:*:*",
            deprecated=bool(deprecated_every) and i % deprecated_every == 0,
        ))
    return cpes


@pytest.fixture
def sqlite_path(tmp_path):
    return str(tmp_path / 'cpe.sqlite3')


@pytest.fixture
def sqlite_driver(sqlite_path):
    driver = new_db('sqlite3', sqlite_path, False, StoreOption(pool_size=8))
    yield driver
    driver.close_db()


class StubPipeline:
    """Pipeline não transacional: falha antes de aplicar qualquer comando."""

    def __init__(self, conn):
        self.conn = conn
        self.commands = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self
        return queue

    def execute(self):
        for name, args, _ in self.commands:
            if name == 'hset' and args[1] in self.conn.fail_on:
                raise DataError(f"Invalid input for {args[1]}")
        return [getattr(self.conn, name)(*args, **kwargs) for name, args, kwargs in self.commands]


class StubRedis:
    """Subconjunto em memória da API do redis-py usada pelo RedisDriver."""

    def __init__(self, fail_on=None):
        self.data = {}
        self.fail_on = set(fail_on or ())
        self.closed = False

    def ping(self):
        return True

    def close(self):
        self.closed = True

    def exists(self, key):
        return int(key in self.data)

    def scan_iter(self, match='*', count=None):
        return iter([key for key in list(self.data) if fnmatch.fnmatchcase(key, match)])

    def hgetall(self, key):
        return dict(self.data.get(key, {}))

    def hset(self, key, field=None, value=None, mapping=None):
        values = self.data.setdefault(key, {})
        if field is not None:
            values[field] = value
        values.update(mapping or {})
        return 1

    def hget(self, key, field):
        return self.data.get(key, {}).get(field)

    def hdel(self, key, *fields):
        values = self.data.get(key, {})
        removed = sum(1 for f in fields if values.pop(f, None) is not None)
        if key in self.data and not values:
            del self.data[key]
        return removed

    def hlen(self, key):
        return len(self.data.get(key, {}))

    def smembers(self, key):
        return set(self.data.get(key, set()))

    def sismember(self, key, member):
        return member in self.data.get(key, set())

    def sadd(self, key, *members):
        self.data.setdefault(key, set()).update(members)
        return len(members)

    def srem(self, key, *members):
        values = self.data.get(key, set())
        values.difference_update(members)
        return len(members)

    def pipeline(self, transaction=True):
        return StubPipeline(self)


@pytest.fixture
def stub_redis():
    return StubRedis()


@pytest.fixture
def cpe_factory():
    return make_cpes


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger('cpedict')
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
