import logging

logger = logging.getLogger("birdcatalog")

_HANDLER_NAME = "birdcatalog-stream"


def setup_logging(level: int | str = logging.INFO) -> None:
    """루트 로거에 스트림 핸들러 하나만 붙인다 (중복 호출 안전, 다른 핸들러는 건드리지 않음)."""
    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        if h.get_name() == _HANDLER_NAME:
            root.removeHandler(h)
    sh = logging.StreamHandler()
    sh.set_name(_HANDLER_NAME)
    sh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(sh)
    logger.debug("Logging configured. level=%s", level)
