from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

from birdcatalog.core.errors import SpawnFailure
from birdcatalog.services.engine.supervisor import locate

logger = logging.getLogger("birdcatalog.engine.clips")


def extract_clip(
    audio_path: str,
    start_time: float,
    end_time: float,
    output_dir: str,
    executable: Optional[str] = None,
    configured_path: Optional[str] = None,
    timeout: float = 30.0,
) -> str:
    """
    `birda clip` 로 검출 구간을 잘라 WAV 로 저장하고 그 경로를 돌려준다.
    birda 는 생성한 파일 경로를 stdout 에 한 줄로 출력한다.
    """
    if start_time > end_time:
        raise ValueError(f"start_time {start_time} > end_time {end_time}")
    if not Path(audio_path).is_file():
        raise FileNotFoundError(f"Audio file not found: {audio_path}")

    executable = executable or locate(configured_path)
    os.makedirs(output_dir, exist_ok=True)
    argv = [
        executable, "clip",
        "--audio", str(audio_path),
        "--start", str(start_time),
        "--end", str(end_time),
        "--output", str(output_dir),
    ]
    logger.info("Extracting clip: %s", " ".join(argv))
    try:
        res = subprocess.run(argv, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise SpawnFailure(f"Clip extraction timed out after {timeout:.0f}s") from e
    except OSError as e:
        raise SpawnFailure(f"Failed to start birda clip: {e}") from e

    if res.returncode != 0:
        raise SpawnFailure(f"Clip extraction failed: {res.stderr.strip()}", stderr=res.stderr)

    clip_path = res.stdout.strip().splitlines()[-1].strip() if res.stdout.strip() else ""
    if not clip_path:
        raise SpawnFailure("Clip extraction produced no output path", stderr=res.stderr)
    return clip_path
