class BirdCatalogError(Exception):
    """Base class for every error raised by the analysis pipeline."""


class EngineNotFound(BirdCatalogError):
    pass


class AnalysisAlreadyRunning(BirdCatalogError):
    def __init__(self, message: str = "An analysis is already running. Cancel it first."):
        super().__init__(message)


class SpawnFailure(BirdCatalogError):
    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class AbnormalExit(BirdCatalogError):
    def __init__(self, returncode: int | None, stderr: str = "", cancelled: bool = False):
        if cancelled:
            message = "birda was cancelled"
        else:
            message = f"birda exited with code {returncode}"
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        self.cancelled = cancelled


class ProtocolDecodeNoise(BirdCatalogError):
    """A stdout line that is not a protocol envelope. Never fatal."""

    def __init__(self, line: str, reason: str):
        super().__init__(f"{reason}: {line}")
        self.line = line
        self.reason = reason


class ResultFileReadFailure(BirdCatalogError):
    pass


class ResultFileMalformed(BirdCatalogError):
    pass


class MigrationFailure(BirdCatalogError):
    def __init__(self, version: int, name: str, cause: Exception | None = None):
        super().__init__(f"Migration {version} ({name}) failed: {cause}")
        self.version = version
        self.name = name
