from contextlib import asynccontextmanager

from fastapi import FastAPI

from birdcatalog.api.routes.analysis import router as analysis_router
from birdcatalog.api.routes.catalog import router as catalog_router
from birdcatalog.core.config import settings
from birdcatalog.core.logging import logger, setup_logging
from birdcatalog.db.session import close_db, get_manager, init_db
from birdcatalog.services.catalog.lease import recover_if_idle
from birdcatalog.services.tasks.runtime import supervisor


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    # 마이그레이션 실패(MigrationFailure)는 그대로 올라가 기동을 막는다
    init_db(settings.DB_PATH)
    # 다른 프로세스가 분석 중이면 그 run 들은 건드리지 않는다
    recover_if_idle(get_manager().session_factory)
    supervisor.install_signal_handlers()
    logger.info("birdcatalog API ready (env=%s)", settings.APP_ENV)
    try:
        yield
    finally:
        killed = supervisor.kill_all()
        logger.info("Shutdown: terminated %d engine process(es)", killed)
        close_db()


app = FastAPI(title="Bird Detection Catalog API", lifespan=lifespan)

app.include_router(analysis_router, prefix="/analysis", tags=["analysis"])
app.include_router(catalog_router, prefix="/catalog", tags=["catalog"])


@app.get("/health")
def health():
    return "SUCCESS"
