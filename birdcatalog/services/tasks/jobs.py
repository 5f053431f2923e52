from __future__ import annotations

import json
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from birdcatalog.core.config import settings
from birdcatalog.core.errors import (
    AbnormalExit,
    ResultFileMalformed,
    ResultFileReadFailure,
    SpawnFailure,
)
from birdcatalog.core.logging import logger
from birdcatalog.db.models.run import AnalysisRun, RunStatus
from birdcatalog.db.session import get_manager
from birdcatalog.schemas.analysis import AnalysisOutcome, AnalysisRequest
from birdcatalog.services.audio.io import build_file_metadata
from birdcatalog.services.catalog.ingest import ensure_audio_file, import_result_file, insert_detections
from birdcatalog.services.catalog.lease import catalog_lease
from birdcatalog.services.catalog.locations import resolve_location
from birdcatalog.services.catalog.runs import (
    create_run,
    delete_completed_runs_for_source,
    finalize_run,
    get_run_state,
    mark_running,
    recover_stale_runs,
)
from birdcatalog.services.engine.events import (
    DetectionsPayload,
    Envelope,
    EventStreamDecoder,
    EventType,
    FileCompletedPayload,
    FileStatus,
)
from birdcatalog.services.engine.protocol import (
    EngineOptions,
    TransportMode,
    choose_mode,
    create_output_dir,
    remove_output_dir,
    resolve_calendar,
    result_path_for,
)
from birdcatalog.services.engine.supervisor import AnalysisLease, EngineProcess, ProcessSupervisor
from birdcatalog.services.tasks.outcome import FileTally, derive_terminal_status

EventListener = Callable[[Envelope], None]

# 파일 단위 실패로만 취급하는 오류 (run 은 계속 진행)
PER_FILE_ERRORS = (ResultFileReadFailure, ResultFileMalformed, SQLAlchemyError, ValidationError)


class AnalysisRunner:
    """
    분석 1회 = run 1개.
    lease → 엔진 탐색 → run 생성 → 프로세스 실행 → 이벤트 소비/저장 → 종료 상태 기록 → 정리.
    엔진을 못 찾거나 이미 분석 중이면 run 을 만들기 전에 예외가 올라간다.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        lease: AnalysisLease,
        session_factory: Optional[sessionmaker] = None,
    ):
        self.supervisor = supervisor
        self.lease = lease
        self._session_factory = session_factory
        self._last_handle: Optional[EngineProcess] = None

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory or get_manager().session_factory

    @property
    def running(self) -> bool:
        return self.lease.held

    def stderr_log(self) -> str:
        handle = self.lease.handle or self._last_handle
        return handle.stderr_log() if handle is not None else ""

    def cancel(self) -> bool:
        """진행 중인 분석에 종료 신호. 실제 종료 처리는 analyze() 쪽에서 프로세스 종료를 보고 한다."""
        if not self.lease.held:
            return False
        handle = self.lease.request_cancel()
        if handle is not None:
            self.supervisor.cancel(handle)
        logger.info(f"[jobs] cancel requested attached={handle is not None}")
        return True

    # ── 실행 ────────────────────────────────────────────────────────────────
    def analyze(self, request: AnalysisRequest, on_event: Optional[EventListener] = None) -> AnalysisOutcome:
        source = Path(request.source_path)
        self.lease.acquire(owner=str(source))
        try:
            # 같은 카탈로그를 여는 다른 프로세스와의 배타. 여기서 막히면 run 은 만들지 않는다
            with catalog_lease(self.session_factory, owner=str(source)):
                if not source.exists():
                    raise FileNotFoundError(f"Source not found: {source}")
                executable = self.supervisor.locate()

                db = self.session_factory()
                try:
                    # lease 를 쥔 이상 남아있는 pending/running run 은 모두 죽은 프로세스의 것
                    recover_stale_runs(db)
                    return self._analyze(db, request, executable, on_event)
                finally:
                    db.close()
        finally:
            self.lease.release()

    def _analyze(
        self,
        db: Session,
        request: AnalysisRequest,
        executable: str,
        on_event: Optional[EventListener],
    ) -> AnalysisOutcome:
        t0 = time.time()

        def dt() -> str:
            return f"{time.time() - t0:.2f}s"

        source_path = request.source_path
        logger.info(
            f"[jobs] START source='{source_path}' model={request.model} conf={request.min_confidence}"
        )

        # 1) 지점
        location_id = None
        if request.latitude is not None and request.longitude is not None:
            loc, created = resolve_location(db, request.latitude, request.longitude, request.location_name)
            location_id = loc.id
            logger.info(f"[jobs] location id={loc.id} created={created} total={dt()}")

        # 2) 같은 source + model 의 이전 완료 run 대체
        replaced = delete_completed_runs_for_source(db, source_path, request.model)
        if replaced:
            logger.info(f"[jobs] replaced {replaced} previous run(s) total={dt()}")

        # 3) 날짜 / 전송 모드
        month, day, doy = resolve_calendar(source_path, request.month, request.day)
        mode = choose_mode(source_path, request.mode)
        output_dir = create_output_dir(settings.SCRATCH_DIR or None) if mode == TransportMode.directory else None
        options = EngineOptions(
            model=request.model,
            min_confidence=request.min_confidence,
            execution_provider=request.execution_provider,
            latitude=request.latitude,
            longitude=request.longitude,
            month=month,
            day=day,
            day_of_year=doy,
            output_dir=output_dir,
        )
        logger.info(f"[jobs] mode={mode.value} month={month} day={day} doy={doy} output_dir={output_dir}")

        # 4) run 생성 (pending)
        run = create_run(
            db,
            source_path,
            request.model,
            request.min_confidence,
            location_id=location_id,
            settings_json=json.dumps(options.as_settings()),
            timezone_offset_min=request.timezone_offset_min,
        )
        logger.info(f"[jobs] run={run.id} created status=pending total={dt()}")

        tally = FileTally(settings.MAX_TRACKED_FILES)
        outcome = self._execute(db, run, executable, options, tally, on_event, dt)

        # 5) 정리: 실패한 디렉터리 모드 결과는 남겨둔다
        if output_dir:
            if outcome.status == RunStatus.failed.value:
                logger.warning(f"[jobs] run={run.id} keeping output dir for inspection: {output_dir}")
                outcome.output_dir = output_dir
            else:
                remove_output_dir(output_dir)
        logger.info(f"[jobs] run={run.id} COMPLETE status={outcome.status} TOTAL={dt()}")
        return outcome

    def _execute(
        self,
        db: Session,
        run: AnalysisRun,
        executable: str,
        options: EngineOptions,
        tally: FileTally,
        on_event: Optional[EventListener],
        dt: Callable[[], str],
    ) -> AnalysisOutcome:
        def outcome(status: RunStatus, error: Optional[str] = None) -> AnalysisOutcome:
            return AnalysisOutcome(
                run_id=run.id,
                status=status.value,
                mode=options.mode,
                detections=tally.detections,
                files_total=tally.total_files,
                files_processed=tally.processed,
                files_failed=tally.failed,
                files_skipped=tally.skipped,
                failed_files=tally.failed_files,
                skipped_files=tally.skipped_files,
                error=error,
            )

        # spawn 실패 → run failed (pending 에서 바로 종료)
        try:
            handle = self.supervisor.start(run.source_path, options, executable=executable)
        except SpawnFailure as e:
            logger.error(f"[jobs] run={run.id} spawn FAILED: {e} total={dt()}")
            return outcome(*self._finalize(db, run.id, RunStatus.failed, str(e), error_log=str(e)))

        self._last_handle = handle
        try:
            mark_running(db, run.id)
            logger.info(f"[jobs] run={run.id} status=running pid={handle.pid} total={dt()}")
            if self.lease.attach(handle):
                self.supervisor.cancel(handle)

            decoder = EventStreamDecoder(on_noise=handle.add_diagnostic)
            for envelope in decoder.decode(handle.lines()):
                if on_event is not None:
                    try:
                        on_event(envelope)
                    except Exception:
                        logger.exception("[jobs] event listener failed")
                self._dispatch(db, run, envelope, options, tally)

            code = handle.wait()
            exit_ok = code == 0 and not handle.cancelled
            logger.info(
                f"[jobs] run={run.id} exit code={code} cancelled={handle.cancelled} "
                f"envelopes={decoder.envelope_count} noise={decoder.noise_count} total={dt()}"
            )
        except Exception as e:
            logger.exception(f"[jobs] run={run.id} FAILED: {e} total={dt()}")
            self.supervisor.cancel(handle)
            try:
                handle.wait(timeout=10)
            except subprocess.TimeoutExpired:
                handle.proc.kill()
            db.rollback()
            finalize_run(db, run.id, RunStatus.failed, error_log=f"{e}\n{handle.stderr_log()}".strip())
            raise
        finally:
            self.supervisor.release(handle)

        status = derive_terminal_status(exit_ok, tally)
        error = None
        error_log = None
        if not exit_ok:
            stderr = handle.stderr_log()
            error = str(AbnormalExit(code, stderr, handle.cancelled))
            error_log = f"{error}\n{stderr}".strip()
        status, error = self._finalize(db, run.id, status, error, error_log=error_log)

        logger.info(
            f"[jobs] run={run.id} files processed={tally.processed} skipped={tally.skipped} "
            f"failed={tally.failed} detections={tally.detections} -> {status.value}"
        )
        return outcome(status, error)

    def _finalize(
        self,
        db: Session,
        run_id: int,
        status: RunStatus,
        error: Optional[str],
        error_log: Optional[str] = None,
    ) -> tuple[RunStatus, Optional[str]]:
        """종료 상태 기록. 이미 다른 쪽이 종료시켰으면 DB 에 남은 상태를 그대로 돌려준다."""
        if finalize_run(db, run_id, status, error_log=error_log):
            return status, error
        stored = get_run_state(db, run_id)
        if stored is None:
            logger.warning(f"[jobs] run={run_id} vanished before finalize, reporting {status.value}")
            return status, error
        stored_status, stored_error = stored
        logger.warning(f"[jobs] run={run_id} was already finalized as {stored_status}, not {status.value}")
        return RunStatus(stored_status), stored_error

    # ── 이벤트 처리 ────────────────────────────────────────────────────────────
    def _dispatch(
        self,
        db: Session,
        run: AnalysisRun,
        envelope: Envelope,
        options: EngineOptions,
        tally: FileTally,
    ) -> None:
        event = envelope.event
        try:
            payload = envelope.typed_payload()
        except ValidationError as e:
            logger.warning(f"[jobs] run={run.id} malformed {event.value} payload: {e.error_count()} error(s)")
            file = envelope.payload.get("file")
            if event in (EventType.detections, EventType.file_completed) and isinstance(file, str):
                tally.mark_failed(file)
            return

        if event == EventType.pipeline_started:
            tally.total_files = payload.total_files
            logger.info(f"[jobs] run={run.id} pipeline started files={payload.total_files}")
        elif event == EventType.file_started:
            logger.info(f"[jobs] run={run.id} processing file: {payload.file}")
        elif event == EventType.progress:
            logger.debug(f"[jobs] run={run.id} progress {payload.file.path} {payload.file.percent:.1f}%")
        elif event == EventType.detections:
            self._ingest_inline(db, run, payload, options, tally)
        elif event == EventType.file_completed:
            self._file_completed(db, run, payload, options, tally)
        elif event == EventType.pipeline_completed:
            logger.info(
                f"[jobs] run={run.id} pipeline completed status={payload.status} "
                f"processed={payload.files_processed} failed={payload.files_failed} "
                f"detections={payload.total_detections}"
            )

    def _ingest_inline(
        self,
        db: Session,
        run: AnalysisRun,
        payload: DetectionsPayload,
        options: EngineOptions,
        tally: FileTally,
    ) -> None:
        if options.mode != TransportMode.inline:
            logger.warning(f"[jobs] run={run.id} ignoring detections envelope in directory mode")
            return
        if not payload.detections:
            return
        try:
            meta = build_file_metadata(payload.file, run.timezone_offset_min)
            audio_file_id = ensure_audio_file(db, run.id, payload.file, meta)
            n = insert_detections(db, run.id, run.location_id, audio_file_id, payload.detections)
        except PER_FILE_ERRORS as e:
            logger.error(f"[jobs] run={run.id} failed to insert detections for {payload.file}: {e}")
            tally.mark_failed(payload.file)
            return
        tally.detections += n
        logger.info(f"[jobs] run={run.id} inserted {n} detection(s) from {payload.file}")

    def _file_completed(
        self,
        db: Session,
        run: AnalysisRun,
        payload: FileCompletedPayload,
        options: EngineOptions,
        tally: FileTally,
    ) -> None:
        file = payload.file
        if payload.status == FileStatus.skipped:
            tally.mark_skipped(file)
            logger.info(f"[jobs] run={run.id} skipped {file}")
            return
        if payload.status == FileStatus.failed:
            tally.mark_failed(file)
            logger.warning(f"[jobs] run={run.id} engine failed to process {file}")
            return

        if options.mode == TransportMode.inline:
            tally.mark_processed(file)
            return

        # 디렉터리 모드: 파일별 결과 JSON 가져오기
        s = time.time()
        try:
            result = import_result_file(
                db,
                run.id,
                run.location_id,
                file,
                result_path_for(options.output_dir, file),
                metadata=build_file_metadata(file, run.timezone_offset_min),
                retries=settings.RESULT_READ_RETRIES,
                base_delay=settings.RESULT_READ_BASE_DELAY_MS / 1000.0,
            )
        except PER_FILE_ERRORS as e:
            logger.error(f"[jobs] run={run.id} failed to import {file}: {e}")
            tally.mark_failed(file)
            return
        tally.mark_processed(file)
        tally.detections += result.detections
        logger.info(
            f"[jobs] run={run.id} imported {result.detections} detection(s) from {result.source_file} "
            f"dt={time.time()-s:.2f}s"
        )
