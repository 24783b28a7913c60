"""Logging setup matching uvicorn's default format."""

from __future__ import annotations

import copy
import logging.config
from typing import Any

from uvicorn.config import LOGGING_CONFIG as UVICORN_LOGGING_CONFIG


def build_logging_config(level: str = "INFO") -> dict[str, Any]:
    log_level = (level or "INFO").upper()
    config = copy.deepcopy(UVICORN_LOGGING_CONFIG)

    config["root"] = {"handlers": ["default"], "level": log_level}

    config["loggers"]["uvicorn"]["level"] = log_level
    config["loggers"]["uvicorn.error"]["level"] = log_level
    config["loggers"]["uvicorn.access"]["level"] = log_level

    return config


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(build_logging_config(level))
