#!/usr/bin/env python3
"""
Ciclo de fetch do dicionário CPE.

Abre o driver, verifica a versão do schema, migra, grava as entradas em
paralelo e atualiza o FetchMeta. Com wait > 0 o ciclo é repetido pelo
APScheduler no intervalo configurado.
"""

import enum
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, TextIO

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from marshmallow import ValidationError

from cpedict import REVISION
from cpedict.config.fetch_config import FetchConfig
from cpedict.db.base import DB
from cpedict.db.errors import IncompatibleSchemaError, InsertError
from cpedict.db.factory import StartupStage, new_db
from cpedict.models.types import LATEST_SCHEMA_VERSION, CategorizedCpe, FetchType
from cpedict.schemas.cpe_schema import CategorizedCpeSchema, FetchMetaSchema
from cpedict.services.ingestion_service import IngestionPipeline, IngestionStats

logger = logging.getLogger(__name__)

JOB_ID = 'cpe_fetch'


class RunState(str, enum.Enum):
    IDLE = 'idle'
    OPENING = 'opening'
    VERSION_CHECKING = 'version_checking'
    MIGRATING = 'migrating'
    INGESTING = 'ingesting'
    META_UPDATING = 'meta_updating'
    DONE = 'done'
    FAILED = 'failed'


_STAGE_TO_STATE = {
    StartupStage.OPENING: RunState.OPENING,
    StartupStage.VERSION_CHECKING: RunState.VERSION_CHECKING,
    StartupStage.MIGRATING: RunState.MIGRATING,
}


def should_retry(error: BaseException) -> bool:
    """
    Erros em que vale repetir o ciclo inteiro no próximo intervalo:
    conexão, base bloqueada e falhas de insert (upserts são idempotentes).
    """
    return isinstance(error, InsertError) or getattr(error, 'recoverable', False)


class FetchJob:
    """
    Executa um ciclo de fetch.

    Attributes:
        state: estado atual da execução
        history: estados visitados na última execução
        recoverable: False quando a última falha exige ação do operador
    """

    def __init__(
        self,
        config: FetchConfig,
        source: Callable[[], Sequence[CategorizedCpe]],
        driver_factory: Callable[..., DB] = new_db,
        out: Optional[TextIO] = None,
    ):
        self.config = config
        self.source = source
        self.driver_factory = driver_factory
        self.out = out or sys.stdout

        self.state = RunState.IDLE
        self.history: List[RunState] = []
        self.recoverable = True

    def _transition(self, state: RunState) -> None:
        logger.debug(f"Fetch state: {self.state.value} -> {state.value}", extra={'run_state': state.value})
        self.state = state
        self.history.append(state)

    def _on_startup_stage(self, stage: StartupStage) -> None:
        state = _STAGE_TO_STATE.get(stage)
        if state is not None:
            self._transition(state)

    def run(self) -> Optional[IngestionStats]:
        """
        Executa o ciclo completo.

        Returns:
            Estatísticas da ingestão, ou None no modo stdout
        """
        self.state = RunState.IDLE
        self.history = [RunState.IDLE]
        self.recoverable = True

        try:
            cpes = list(self.source())
            logger.info(f"Loaded {len(cpes)} CPEs", extra={'fetch_type': self.config.fetch_type.value})
            self._check_fetch_type(cpes)

            if self.config.stdout:
                self._print_cpes(cpes)
                self._transition(RunState.DONE)
                return None

            driver = self.driver_factory(
                self.config.db_type,
                self.config.db_path,
                self.config.debug_sql,
                self.config.store_option(),
                on_stage=self._on_startup_stage,
            )
            try:
                stats = self._ingest(driver, cpes)
            finally:
                driver.close_db()
        except Exception as e:
            failed_from = self.state
            self._transition(RunState.FAILED)
            # Base legada: sem volta automática para OPENING
            if isinstance(e, IncompatibleSchemaError):
                self.recoverable = False
            logger.error(f"Fetch failed in state {failed_from.value}: {e}")
            raise

        self._transition(RunState.DONE)
        return stats

    def _check_fetch_type(self, cpes: List[CategorizedCpe]) -> None:
        # Todas as linhas são gravadas com o fetch_type configurado
        expected = self.config.fetch_type
        errors = {
            index: {'fetch_type': [f"Expected {expected.value}, got {FetchType(cpe.fetch_type).value}."]}
            for index, cpe in enumerate(cpes)
            if FetchType(cpe.fetch_type) is not expected
        }
        if errors:
            raise ValidationError(errors)

    def _ingest(self, driver: DB, cpes: List[CategorizedCpe]) -> IngestionStats:
        fetch_meta = driver.get_fetch_meta()
        if fetch_meta.outdated():
            raise IncompatibleSchemaError(
                "Failed to Insert CPEs into DB. SchemaVersion is old. "
                f"SchemaVersion: {fetch_meta.schema_version}, LatestSchemaVersion: {LATEST_SCHEMA_VERSION}. "
                "Delete Database and fetch again."
            )

        # Grava o marcador de versão antes de inserir: um primeiro fetch que
        # falhe ainda deixa a base identificável.
        fetch_meta.revision = REVISION
        driver.upsert_fetch_meta(fetch_meta)

        self._transition(RunState.INGESTING)
        pipeline = IngestionPipeline(driver, batch_size=self.config.batch_size, threads=self.config.threads)
        stats = pipeline.run(self.config.fetch_type, cpes)

        self._transition(RunState.META_UPDATING)
        fetch_meta.last_fetched_at = datetime.now(timezone.utc)
        driver.upsert_fetch_meta(fetch_meta)
        logger.info(f"FetchMeta updated: {FetchMetaSchema().dumps(fetch_meta)}")
        return stats

    def _print_cpes(self, cpes: List[CategorizedCpe]) -> None:
        schema = CategorizedCpeSchema()
        for cpe in cpes:
            self.out.write(json.dumps(schema.dump(cpe), ensure_ascii=False) + '\n')
        self.out.flush()


class FetchScheduler:
    """
    Repete o FetchJob a cada `wait` segundos (wait = 0 executa uma vez).

    Falhas recuperáveis são registradas e o ciclo é repetido no próximo
    intervalo; falhas não recuperáveis encerram o scheduler.
    """

    def __init__(self, job: FetchJob, wait: int, scheduler: Optional[BlockingScheduler] = None):
        self.job = job
        self.wait = wait
        self.scheduler = scheduler
        self.last_error: Optional[BaseException] = None

    def start(self) -> None:
        if self.wait <= 0:
            self.job.run()
            return

        if self.scheduler is None:
            self.scheduler = BlockingScheduler()
        self.scheduler.add_job(
            func=self.job.run,
            trigger=IntervalTrigger(seconds=self.wait),
            id=JOB_ID,
            name='CPE fetch',
            replace_existing=True,
            max_instances=1,  # Evita execuções simultâneas
            next_run_time=datetime.now(timezone.utc),
        )
        self.scheduler.add_listener(self.job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

        logger.info(f"Fetching every {self.wait} seconds")
        self.scheduler.start()

        if self.last_error is not None:
            raise self.last_error

    def job_listener(self, event) -> None:
        """
        Listener para eventos do job.
        """
        if event.exception is None:
            logger.info(f"Job {event.job_id} executed successfully, next run in {self.wait} seconds")
            return

        if should_retry(event.exception) and self.job.recoverable:
            logger.warning(f"Job {event.job_id} failed, retrying in {self.wait} seconds: {event.exception}")
            return

        logger.error(f"Job {event.job_id} failed with a non-recoverable error: {event.exception}")
        self.last_error = event.exception
        self.scheduler.shutdown(wait=False)
