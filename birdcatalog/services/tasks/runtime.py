from birdcatalog.core.config import settings
from birdcatalog.services.engine.supervisor import AnalysisLease, ProcessSupervisor
from birdcatalog.services.tasks.jobs import AnalysisRunner

# 프로세스 전역: 엔진 프로세스 감독자 + 단일 분석 lease
supervisor = ProcessSupervisor(settings.BIRDA_PATH or None, settings.MAX_STDERR_LINES)
lease = AnalysisLease()
runner = AnalysisRunner(supervisor, lease)


def get_runner() -> AnalysisRunner:
    return runner
