#!/usr/bin/env python3
"""
Driver chave-valor baseado em Redis.

Layout das chaves:
- CPE#FETCHMETA                  hash com Revision, SchemaVersion, LastFetchedAt
- CPE#VP                         set de "vendor#product"
- CPE#VP#<vendor>#<product>      hash cpe_uri (2.2) -> cpe_fs (2.3)
- CPE#PAIR#<fetch_type>          hash cpe_uri -> "vendor#product" atual da entrada
- CPE#DEP#<fetch_type>           set com os nomes (2.2 e 2.3) depreciados pela fonte

Diferente do driver relacional, insert_cpes não é atômico: cada entrada é
gravada de forma independente, todas as entradas do lote são tentadas e o
primeiro erro é reportado ao final, sem desfazer as gravações anteriores.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import redis
from redis.exceptions import RedisError

from cpedict.models.types import CategorizedCpe, FetchMeta, FetchType, VendorProduct

from .base import DB, StoreOption
from .errors import InsertError, MigrationError, StoreConnectionError, StoreLookupError

logger = logging.getLogger(__name__)

KEY_SEPARATOR = '#'
FETCH_META_KEY = 'CPE#FETCHMETA'
VENDOR_PRODUCTS_KEY = 'CPE#VP'
VENDOR_PRODUCT_CPES_KEY_PREFIX = 'CPE#VP#'
PAIRS_KEY_PREFIX = 'CPE#PAIR#'
DEPRECATED_KEY_PREFIX = 'CPE#DEP#'

# Qualquer chave CPE#* sem CPE#FETCHMETA indica o layout V1
LEGACY_KEY_PATTERN = 'CPE#*'


def _vendor_product_member(vendor: str, product: str) -> str:
    return f"{vendor}{KEY_SEPARATOR}{product}"


def _pairs_key(fetch_type_value: str) -> str:
    return PAIRS_KEY_PREFIX + fetch_type_value


def _deprecated_key(fetch_type_value: str) -> str:
    return DEPRECATED_KEY_PREFIX + fetch_type_value


class RedisDriver(DB):
    """Driver para Redis."""

    def __init__(self, name: str):
        self._name = name
        self.conn: Optional[redis.Redis] = None

    def name(self) -> str:
        return self._name

    def open_db(self, db_type: str, db_path: str, debug_sql: bool, option: StoreOption) -> None:
        try:
            # O pool do redis-py é thread-safe; o cliente é compartilhado
            # por todos os workers.
            self.conn = redis.from_url(
                db_path,
                decode_responses=True,
                socket_connect_timeout=option.redis_timeout,
                socket_timeout=option.redis_timeout,
                retry_on_timeout=True,
            )
            self.conn.ping()
        except (RedisError, ValueError) as e:
            self.close_db()
            raise StoreConnectionError(f"Failed to open DB. dbtype: {db_type}, dbpath: {db_path}, err: {e}") from e

        logger.info(f"Redis connected: {db_path}")

    def close_db(self) -> None:
        if self.conn is not None:
            self.conn.close()
        self.conn = None

    def migrate_db(self) -> None:
        """
        Não há schema a migrar; apenas grava o marcador de versão em uma
        base vazia para que ela não seja confundida com o layout V1.
        """
        try:
            if not self.conn.exists(FETCH_META_KEY):
                self.upsert_fetch_meta(FetchMeta())
        except (RedisError, InsertError) as e:
            raise MigrationError(f"Failed to write schema marker. err: {e}") from e

    def is_go_cpe_dict_model_v1(self) -> bool:
        try:
            if self.conn.exists(FETCH_META_KEY):
                return False
            legacy_key = next(iter(self.conn.scan_iter(match=LEGACY_KEY_PATTERN, count=100)), None)
        except RedisError as e:
            raise StoreLookupError(f"Failed to scan keys. err: {e}") from e
        return legacy_key is not None

    def get_fetch_meta(self) -> FetchMeta:
        try:
            values = self.conn.hgetall(FETCH_META_KEY)
        except RedisError as e:
            raise StoreLookupError(f"Failed to get FetchMeta. err: {e}") from e

        if not values:
            return FetchMeta()
        return FetchMeta(
            revision=values.get('Revision', ''),
            schema_version=int(values.get('SchemaVersion', 0)),
            last_fetched_at=datetime.fromisoformat(values['LastFetchedAt']),
        )

    def upsert_fetch_meta(self, fetch_meta: FetchMeta) -> None:
        # Um único HSET: leitores nunca observam um registro parcial
        try:
            self.conn.hset(FETCH_META_KEY, mapping={
                'Revision': fetch_meta.revision,
                'SchemaVersion': str(fetch_meta.schema_version),
                'LastFetchedAt': fetch_meta.last_fetched_at.isoformat(),
            })
        except RedisError as e:
            raise InsertError(f"Failed to upsert FetchMeta. err: {e}") from e

    def get_vendor_products(self) -> List[VendorProduct]:
        try:
            members = self.conn.smembers(VENDOR_PRODUCTS_KEY)
        except RedisError as e:
            raise StoreLookupError(f"Failed to get vendor products. err: {e}") from e

        vendor_products = []
        for member in members:
            vendor, _, product = member.partition(KEY_SEPARATOR)
            vendor_products.append(VendorProduct(vendor=vendor, product=product))
        return sorted(vendor_products)

    def get_cpes_by_vendor_product(self, vendor: str, product: str) -> Tuple[List[str], List[str]]:
        key = VENDOR_PRODUCT_CPES_KEY_PREFIX + _vendor_product_member(vendor, product)
        try:
            names = self.conn.hgetall(key)
        except RedisError as e:
            raise StoreLookupError(f"Failed to get CPEs by {vendor}#{product}. err: {e}") from e
        return sorted(names.keys()), sorted(set(names.values()))

    def is_deprecated(self, cpe_name: str) -> bool:
        # Depreciado se alguma fonte (fetch_type) o marcou
        try:
            return any(self.conn.sismember(_deprecated_key(t.value), cpe_name) for t in FetchType)
        except RedisError as e:
            raise StoreLookupError(f"Failed to check deprecation of {cpe_name}. err: {e}") from e

    def insert_cpes(self, fetch_type: FetchType, cpes: Sequence[CategorizedCpe]) -> None:
        fetch_type_value = FetchType(fetch_type).value
        first_error: Optional[RedisError] = None
        failed = 0

        for cpe in cpes:
            try:
                self._insert_cpe(fetch_type_value, cpe)
            except RedisError as e:
                failed += 1
                if first_error is None:
                    first_error = e
                logger.warning(f"Failed to insert {cpe.cpe_uri} ({fetch_type_value}): {e}")

        if first_error is not None:
            raise InsertError(
                f"Failed to insert {failed} of {len(cpes)} CPEs into Redis. first err: {first_error}"
            ) from first_error

    def _insert_cpe(self, fetch_type_value: str, cpe: CategorizedCpe) -> None:
        member = _vendor_product_member(cpe.vendor, cpe.product)
        pairs_key = _pairs_key(fetch_type_value)
        deprecated_key = _deprecated_key(fetch_type_value)

        previous = self.conn.hget(pairs_key, cpe.cpe_uri)
        moved = previous is not None and previous != member
        release = moved and not self._pair_held_by_other_fetch_type(fetch_type_value, cpe.cpe_uri, previous)

        pipe = self.conn.pipeline(transaction=False)
        if previous is not None:
            previous_fs = self.conn.hget(VENDOR_PRODUCT_CPES_KEY_PREFIX + previous, cpe.cpe_uri)
            if previous_fs is not None and previous_fs != cpe.cpe_fs:
                pipe.srem(deprecated_key, previous_fs)
        if release:
            pipe.hdel(VENDOR_PRODUCT_CPES_KEY_PREFIX + previous, cpe.cpe_uri)
        pipe.sadd(VENDOR_PRODUCTS_KEY, member)
        pipe.hset(VENDOR_PRODUCT_CPES_KEY_PREFIX + member, cpe.cpe_uri, cpe.cpe_fs)
        pipe.hset(pairs_key, cpe.cpe_uri, member)
        if cpe.deprecated:
            pipe.sadd(deprecated_key, cpe.cpe_uri, cpe.cpe_fs)
        else:
            pipe.srem(deprecated_key, cpe.cpe_uri, cpe.cpe_fs)
        pipe.execute()

        # O par antigo sai do índice quando não sobra nenhuma entrada nele
        if release and not self.conn.hlen(VENDOR_PRODUCT_CPES_KEY_PREFIX + previous):
            self.conn.srem(VENDOR_PRODUCTS_KEY, previous)
            logger.debug(f"Removed vendor product {previous}")

    def _pair_held_by_other_fetch_type(self, fetch_type_value: str, cpe_uri: str, member: str) -> bool:
        return any(
            self.conn.hget(_pairs_key(t.value), cpe_uri) == member
            for t in FetchType
            if t.value != fetch_type_value
        )
