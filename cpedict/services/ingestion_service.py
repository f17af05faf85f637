#!/usr/bin/env python3
"""
Serviço de ingestão paralela de entradas CPE.
Divide a coleção em lotes contíguos e os grava concorrentemente no driver.
"""

import logging
import os
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from cpedict.db.base import DB
from cpedict.db.chunking import IndexChunk, chunk_slice
from cpedict.db.errors import InsertError
from cpedict.models.types import CategorizedCpe, FetchType

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

# Marca o fim da fila para cada worker
_END_OF_CHUNKS = None


@dataclass
class IngestionStats:
    """Estatísticas de uma execução do pipeline"""
    total_records: int = 0
    total_chunks: int = 0
    inserted_chunks: int = 0
    failed_chunks: int = 0
    skipped_chunks: int = 0
    start_time: float = 0
    end_time: float = 0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def records_per_second(self) -> float:
        if self.duration == 0:
            return 0.0
        return self.total_records / self.duration


@dataclass
class _WorkerResult:
    inserted: int = 0
    failed: int = 0
    skipped: int = 0


class IngestionPipeline:
    """
    Upsert concorrente de entradas CPE em lotes.

    Características:
    - Produtor único gera os chunks de forma lazy em uma fila limitada
    - Pool fixo de `threads` workers consumindo a fila
    - Todos os workers compartilham o mesmo driver (que garante thread-safety)
    - Após a primeira falha nenhum chunk novo é iniciado; chunks em andamento
      terminam e chunks já gravados não são desfeitos
    """

    def __init__(self, driver: DB, batch_size: int = DEFAULT_BATCH_SIZE, threads: Optional[int] = None):
        """
        Args:
            driver: driver já aberto e migrado (ver cpedict.db.new_db)
            batch_size: número de entradas por chamada de insert_cpes
            threads: largura do pool de workers (padrão: número de CPUs)
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if threads is None:
            threads = os.cpu_count() or 1
        if threads < 1:
            raise ValueError(f"threads must be >= 1, got {threads}")

        self.driver = driver
        self.batch_size = batch_size
        self.threads = threads

        self._error_lock = threading.Lock()
        self._first_error: Optional[Tuple[IndexChunk, Exception]] = None

    def run(self, fetch_type: FetchType, cpes: Sequence[CategorizedCpe]) -> IngestionStats:
        """
        Grava todas as entradas e retorna as estatísticas da execução.

        Raises:
            InsertError: primeiro erro reportado por um worker
        """
        stats = IngestionStats(total_records=len(cpes), start_time=time.time())
        self._first_error = None
        stop = threading.Event()
        chunk_queue: "queue.Queue[Optional[IndexChunk]]" = queue.Queue(maxsize=self.threads)

        logger.info(
            f"Inserting {len(cpes)} {FetchType(fetch_type).value} CPEs "
            f"(batch size: {self.batch_size}, threads: {self.threads})"
        )

        producer = threading.Thread(
            target=self._produce,
            args=(chunk_queue, len(cpes)),
            name='cpe-chunk-producer',
            daemon=True,
        )
        producer.start()

        with ThreadPoolExecutor(max_workers=self.threads, thread_name_prefix='cpe-insert') as executor:
            futures = [
                executor.submit(self._consume, chunk_queue, stop, fetch_type, cpes)
                for _ in range(self.threads)
            ]
            for future in as_completed(futures):
                result = future.result()
                stats.inserted_chunks += result.inserted
                stats.failed_chunks += result.failed
                stats.skipped_chunks += result.skipped

        producer.join()
        stats.total_chunks = stats.inserted_chunks + stats.failed_chunks + stats.skipped_chunks
        stats.end_time = time.time()

        if self._first_error is not None:
            chunk, error = self._first_error
            logger.error(
                f"Ingestion failed: {stats.failed_chunks} failed, {stats.skipped_chunks} skipped, "
                f"{stats.inserted_chunks} committed of {stats.total_chunks} chunks"
            )
            raise InsertError(
                f"Failed to insert CPEs [{chunk.start}, {chunk.end}). err: {error}",
                start=chunk.start,
                end=chunk.end,
            ) from error

        logger.info(
            f"Inserted {stats.total_records} CPEs in {stats.total_chunks} chunks "
            f"({stats.duration:.2f}s, {stats.records_per_second:.1f} records/s)"
        )
        return stats

    def _produce(self, chunk_queue: "queue.Queue[Optional[IndexChunk]]", length: int) -> None:
        try:
            for chunk in chunk_slice(length, self.batch_size):
                chunk_queue.put(chunk)
        finally:
            for _ in range(self.threads):
                chunk_queue.put(_END_OF_CHUNKS)

    def _consume(
        self,
        chunk_queue: "queue.Queue[Optional[IndexChunk]]",
        stop: threading.Event,
        fetch_type: FetchType,
        cpes: Sequence[CategorizedCpe],
    ) -> _WorkerResult:
        result = _WorkerResult()
        while True:
            chunk = chunk_queue.get()
            if chunk is _END_OF_CHUNKS:
                return result

            # Continua drenando a fila para o produtor nunca ficar bloqueado
            if stop.is_set():
                result.skipped += 1
                continue

            try:
                self.driver.insert_cpes(fetch_type, cpes[chunk.start:chunk.end])
                result.inserted += 1
                logger.debug(f"Chunk [{chunk.start}, {chunk.end}) inserted")
            except Exception as e:
                result.failed += 1
                stop.set()
                self._record_error(chunk, e)
                logger.error(f"Chunk [{chunk.start}, {chunk.end}) failed: {e}")

    def _record_error(self, chunk: IndexChunk, error: Exception) -> None:
        with self._error_lock:
            if self._first_error is None:
                self._first_error = (chunk, error)
