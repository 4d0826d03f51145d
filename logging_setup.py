import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
_HANDLER_NAME = "vapeshop"


def setup_logging(settings) -> logging.Handler:
    """Configure one stream handler on the root logger and the uvicorn/fastapi loggers."""
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    handler = next((h for h in root.handlers if h.get_name() == _HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    handler.setLevel(level)

    # uvicorn installs its own handlers; route them through ours instead
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        lg.handlers = [h for h in lg.handlers if h.get_name() != _HANDLER_NAME]
        lg.propagate = True

    return handler
