import asyncio

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from birdcatalog.core.config import settings
from birdcatalog.core.errors import AnalysisAlreadyRunning, EngineNotFound, SpawnFailure
from birdcatalog.db.session import get_db
from birdcatalog.schemas.analysis import (
    AnalysisOutcome,
    AnalysisRequest,
    ClipRequest,
    ClipResult,
    EngineInfo,
)
from birdcatalog.services.catalog.ingest import update_detection_clip_path
from birdcatalog.services.engine.clips import extract_clip
from birdcatalog.services.engine.supervisor import check_engine_version
from birdcatalog.services.tasks.jobs import AnalysisRunner
from birdcatalog.services.tasks.runtime import get_runner

router = APIRouter()


@router.post("/start", response_model=AnalysisOutcome)
async def start_analysis(req: AnalysisRequest, runner: AnalysisRunner = Depends(get_runner)):
    # 분석은 오래 걸리므로 워커 스레드에서 (이벤트 루프 블로킹 방지)
    try:
        return await asyncio.to_thread(runner.analyze, req)
    except AnalysisAlreadyRunning as e:
        raise HTTPException(409, str(e))
    except EngineNotFound as e:
        raise HTTPException(503, str(e))
    except FileNotFoundError as e:
        raise HTTPException(404, str(e))


@router.post("/cancel")
def cancel_analysis(runner: AnalysisRunner = Depends(get_runner)):
    return {"cancelled": runner.cancel()}


@router.get("/log")
def analysis_log(runner: AnalysisRunner = Depends(get_runner)):
    return {"running": runner.running, "stderr": runner.stderr_log()}


@router.get("/engine", response_model=EngineInfo)
async def engine_info(runner: AnalysisRunner = Depends(get_runner)):
    try:
        path = runner.supervisor.locate()
        info = await asyncio.to_thread(check_engine_version, path, settings.BIRDA_MIN_VERSION)
    except EngineNotFound as e:
        raise HTTPException(503, str(e))
    except (SpawnFailure, ValueError) as e:
        raise HTTPException(502, str(e))
    return EngineInfo(path=path, **info)


@router.post("/clips", response_model=ClipResult)
async def create_clip(
    req: ClipRequest,
    runner: AnalysisRunner = Depends(get_runner),
    db: Session = Depends(get_db),
):
    try:
        executable = runner.supervisor.locate()
        clip_path = await asyncio.to_thread(
            extract_clip,
            req.audio_path,
            req.start_time,
            req.end_time,
            req.output_dir or settings.CLIP_OUTPUT_DIR,
            executable,
            None,
            settings.CLIP_TIMEOUT_S,
        )
    except EngineNotFound as e:
        raise HTTPException(503, str(e))
    except FileNotFoundError as e:
        raise HTTPException(404, str(e))
    except SpawnFailure as e:
        raise HTTPException(502, str(e))

    if req.detection_id is not None and not update_detection_clip_path(db, req.detection_id, clip_path):
        raise HTTPException(404, "Detection not found")
    return ClipResult(clip_path=clip_path, detection_id=req.detection_id)
