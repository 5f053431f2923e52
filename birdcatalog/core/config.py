from pydantic_settings import BaseSettings, SettingsConfigDict
import os

class Settings(BaseSettings):
    APP_ENV: str = "dev"

    STORAGE_DIR: str = "./data"
    DB_PATH: str = "./data/birda-catalog.db"
    # 분석 중 디렉터리 모드 결과(JSON)를 임시로 쓰는 위치. 비우면 시스템 temp 사용
    SCRATCH_DIR: str = ""
    CLIP_OUTPUT_DIR: str = "./data/clips"

    # 비우면 PATH 에서 birda 를 찾는다
    BIRDA_PATH: str = ""
    BIRDA_MIN_VERSION: str = "1.6.0"

    DEFAULT_MODEL: str = "birdnet-v24"
    DEFAULT_CONFIDENCE: float = 0.1
    DEFAULT_EXECUTION_PROVIDER: str = "auto"

    MAX_STDERR_LINES: int = 500
    MAX_TRACKED_FILES: int = 100
    RESULT_READ_RETRIES: int = 3
    RESULT_READ_BASE_DELAY_MS: int = 100
    CLIP_TIMEOUT_S: float = 30.0

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
os.makedirs(settings.STORAGE_DIR, exist_ok=True)
