# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# logging_config.py
import logging
import os

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# logger -> (env override, default level; None follows LOG_LEVEL)
FRAMEWORK_LOGGERS = {
    "uvicorn": ("UVICORN_LEVEL", None),
    "uvicorn.access": ("UVICORN_ACCESS_LEVEL", "WARNING"),
    # ping/pong chatter
    "socketio": ("SOCKETIO_LEVEL", "WARNING"),
    "engineio": ("ENGINEIO_LEVEL", "WARNING"),
    # model SDK request lines
    "httpx": ("HTTPX_LEVEL", "WARNING"),
    "openai": ("OPENAI_LEVEL", "WARNING"),
    "anthropic": ("ANTHROPIC_LEVEL", "WARNING"),
}


def _to_level(name, default: int) -> int:
    level = logging.getLevelName((name or "").upper())
    return level if isinstance(level, int) else default


def configure_logging():
    root_name = os.getenv("LOG_LEVEL", "INFO")
    root_level = _to_level(root_name, logging.INFO)

    logging.basicConfig(level=root_level, format=os.getenv("LOG_FORMAT", DEFAULT_FORMAT), force=True)
    logging.captureWarnings(True)

    # handlers attached by the libraries themselves duplicate every line
    for name, (env_key, default) in FRAMEWORK_LOGGERS.items():
        lg = logging.getLogger(name)
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.propagate = True
        lg.setLevel(_to_level(os.getenv(env_key, default or root_name), root_level))
