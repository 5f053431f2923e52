from __future__ import annotations

import atexit
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import threading
from collections import deque
from typing import Iterator, List, Optional

from birdcatalog.core.errors import AnalysisAlreadyRunning, EngineNotFound, SpawnFailure
from birdcatalog.services.engine.protocol import EngineOptions

logger = logging.getLogger("birdcatalog.engine.supervisor")

BINARY_NAMES = ("birda", "birda.exe")
MAX_STDERR_LINES = 500

EXECUTION_PROVIDER_FLAGS = {
    "auto": "--gpu",
    "cpu": "--cpu",
    "cuda": "--cuda",
    "tensorrt": "--tensorrt",
    "coreml": "--coreml",
    "directml": "--directml",
    "rocm": "--rocm",
    "openvino": "--openvino",
    "onednn": "--onednn",
    "qnn": "--qnn",
    "acl": "--acl",
    "armnn": "--armnn",
    "xnnpack": "--xnnpack",
}

_VERSION_OUTPUT = re.compile(r"birda.*?\s+v?(\d+\.\d+\.\d+)", re.IGNORECASE)
_SEMVER = re.compile(r"^(\d+)\.(\d+)\.(\d+)")


def execution_provider_flag(provider: Optional[str]) -> Optional[str]:
    if not provider:
        return None
    return EXECUTION_PROVIDER_FLAGS.get(provider.lower())


def locate(configured_path: Optional[str] = None) -> str:
    """
    엔진 실행 파일 경로 결정.
    1) 설정된 경로 (파일명이 birda/birda.exe 이고 실행 가능해야 함)
    2) PATH 검색
    """
    if configured_path:
        basename = os.path.basename(configured_path).lower()
        if basename not in BINARY_NAMES:
            logger.warning("Configured path does not point to a birda binary: %s", configured_path)
        elif not (os.path.isfile(configured_path) and os.access(configured_path, os.X_OK)):
            logger.warning("Configured birda path not found or not executable: %s", configured_path)
        else:
            return configured_path

    binary = "birda.exe" if sys.platform == "win32" else "birda"
    found = shutil.which(binary)
    if found:
        return found
    raise EngineNotFound(
        "birda CLI not found in PATH. Install birda or set BIRDA_PATH.\n"
        "Download: https://github.com/tphakala/birda"
    )


def parse_version(version: str) -> Optional[tuple[int, int, int]]:
    m = _SEMVER.match(version)
    if not m:
        return None
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def engine_version(executable: str, timeout: float = 2.0) -> str:
    """`birda -V` 출력에서 버전 문자열 추출 ("birda 1.6.0", "Birda CLI v1.6.0" 등)"""
    try:
        res = subprocess.run([executable, "-V"], capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise SpawnFailure(f"Failed to get birda version: {e}") from e
    output = (res.stdout or res.stderr).strip()
    m = _VERSION_OUTPUT.search(output)
    if not m:
        raise ValueError(f"Could not parse birda version from output: {output}")
    return m.group(1)


def check_engine_version(executable: str, min_version: str) -> dict:
    version = engine_version(executable)
    parsed, minimum = parse_version(version), parse_version(min_version)
    if parsed is None or minimum is None:
        raise ValueError(f"Invalid version format: {version} or {min_version}")
    return {"version": version, "meets_minimum": parsed >= minimum, "min_version": min_version}


def build_argv(executable: str, source_path: str, options: EngineOptions) -> List[str]:
    argv = [executable]

    # 출력 모드
    if options.output_dir:
        argv += ["--output-dir", options.output_dir, "--output-mode", "ndjson", "--format", "json"]
    else:
        argv.append("--stdout")

    argv += ["--force", "--model", options.model, "-c", str(options.min_confidence)]

    ep_flag = execution_provider_flag(options.execution_provider)
    if ep_flag:
        argv.append(ep_flag)

    if options.latitude is not None and options.longitude is not None:
        argv += ["--lat", str(options.latitude), "--lon", str(options.longitude)]
    if options.month is not None:
        argv += ["--month", str(options.month)]
    if options.day is not None:
        argv += ["--day", str(options.day)]
    if options.day_of_year is not None:
        argv += ["--day-of-year", str(options.day_of_year)]
    if options.quiet:
        argv.append("-q")

    argv.append(str(source_path))
    return argv


class EngineProcess:
    """
    실행 중인 엔진 프로세스 핸들.
    stderr 는 별도 스레드가 읽어 꼬리 버퍼에 쌓고, stdout 라인은 소비자가 lines() 로 순서대로 읽는다.
    """

    def __init__(self, proc: subprocess.Popen, argv: List[str], max_stderr_lines: int = MAX_STDERR_LINES):
        self.proc = proc
        self.argv = argv
        self.cancelled = False
        self._tail: deque[str] = deque(maxlen=max_stderr_lines)
        self._stderr_thread = threading.Thread(
            target=self._pump_stderr, name=f"birda-stderr-{proc.pid}", daemon=True
        )
        self._stderr_thread.start()

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode

    @property
    def alive(self) -> bool:
        return self.proc.poll() is None

    def _pump_stderr(self) -> None:
        if self.proc.stderr is None:
            return
        for line in self.proc.stderr:
            text = line.rstrip()
            if not text:
                continue
            self._tail.append(text)
            logger.warning("[stderr] %s", text)

    def add_diagnostic(self, line: str) -> None:
        self._tail.append(line)

    def lines(self) -> Iterator[str]:
        if self.proc.stdout is None:
            return
        for line in self.proc.stdout:
            yield line

    def wait(self, timeout: Optional[float] = None) -> int:
        code = self.proc.wait(timeout=timeout)
        self._stderr_thread.join(timeout=5)
        return code

    def stderr_log(self) -> str:
        return "\n".join(self._tail)


class ProcessSupervisor:
    def __init__(self, configured_path: Optional[str] = None, max_stderr_lines: int = MAX_STDERR_LINES):
        self.configured_path = configured_path
        self.max_stderr_lines = max_stderr_lines
        self._handles: set[EngineProcess] = set()
        # 신호 핸들러(kill_all)가 이 락을 쥔 메인 스레드 위에서 실행될 수 있다
        self._lock = threading.RLock()
        self._signals_installed = False

    def locate(self) -> str:
        return locate(self.configured_path)

    def start(self, source_path: str, options: EngineOptions, executable: Optional[str] = None) -> EngineProcess:
        executable = executable or self.locate()
        argv = build_argv(executable, source_path, options)
        logger.info("Spawning: %s", " ".join(argv))
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            logger.error("Failed to start birda: %s", e)
            raise SpawnFailure(f"Failed to start birda: {e}") from e

        handle = EngineProcess(proc, argv, self.max_stderr_lines)
        with self._lock:
            self._handles.add(handle)
        return handle

    def cancel(self, handle: EngineProcess) -> bool:
        """SIGTERM 전송. 이미 끝났거나 취소된 핸들이면 아무것도 하지 않는다."""
        with self._lock:
            self._handles.discard(handle)
        if handle.cancelled or not handle.alive:
            return False
        handle.cancelled = True
        try:
            handle.proc.terminate()
        except ProcessLookupError:
            return False
        logger.info("Sent SIGTERM to birda pid=%s", handle.pid)
        return True

    def release(self, handle: EngineProcess) -> None:
        with self._lock:
            self._handles.discard(handle)

    def active(self) -> List[EngineProcess]:
        with self._lock:
            return [h for h in self._handles if h.alive]

    def kill_all(self) -> int:
        with self._lock:
            handles = list(self._handles)
            self._handles.clear()
        killed = 0
        for h in handles:
            if h.alive:
                try:
                    h.cancelled = True
                    h.proc.terminate()
                    killed += 1
                except ProcessLookupError:
                    pass
        if killed:
            logger.warning("Terminated %d birda process(es)", killed)
        return killed

    def install_signal_handlers(self) -> None:
        """
        SIGINT/SIGTERM 및 인터프리터 종료 시 kill_all.
        기존 핸들러(ASGI 서버 등)는 그대로 이어서 호출한다. 메인 스레드에서만 설치 가능.
        """
        if self._signals_installed or threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous = signal.getsignal(signum)

            def _handler(sig, frame, _previous=previous):
                logger.warning("Received signal %s. Terminating birda processes.", sig)
                self.kill_all()
                if callable(_previous):
                    _previous(sig, frame)
                elif _previous == signal.SIG_DFL:
                    raise SystemExit(128 + sig)

            signal.signal(signum, _handler)
        atexit.register(self.kill_all)
        self._signals_installed = True


class AnalysisLease:
    """
    시스템 전체에서 분석 1개만 허용하는 배타 자원.
    run 시작 시 acquire, 종료 상태 기록 후 release.
    spawn 이전에 들어온 cancel 요청은 기억했다가 attach 시점에 적용한다.
    """

    def __init__(self):
        self._lock = threading.Lock()
        # request_cancel 은 신호 핸들러에서도 불린다
        self._state = threading.RLock()
        self._handle: Optional[EngineProcess] = None
        self._cancel_requested = False
        self.owner: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @property
    def handle(self) -> Optional[EngineProcess]:
        return self._handle

    def acquire(self, owner: Optional[str] = None) -> None:
        if not self._lock.acquire(blocking=False):
            raise AnalysisAlreadyRunning()
        with self._state:
            self._handle = None
            self._cancel_requested = False
            self.owner = owner

    def release(self) -> None:
        with self._state:
            self._handle = None
            self._cancel_requested = False
            self.owner = None
        if self._lock.locked():
            self._lock.release()

    def attach(self, handle: EngineProcess) -> bool:
        """핸들 등록. 먼저 들어온 cancel 요청이 있었으면 True."""
        with self._state:
            self._handle = handle
            return self._cancel_requested

    def request_cancel(self) -> Optional[EngineProcess]:
        with self._state:
            self._cancel_requested = True
            return self._handle
