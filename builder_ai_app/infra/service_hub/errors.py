# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/service_hub/errors.py

from enum import Enum
from typing import Optional, Any, Dict
from pydantic import BaseModel, Field


class ServiceKind(str, Enum):
    llm = "llm"
    other = "other"


class ServiceError(BaseModel):
    """
    Canonical error object for backend services (model streams).
    This is what propagates up to the driver's caller.
    """
    kind: ServiceKind
    # e.g. 'OpenAIStreamClient', 'ChunkedToolCallDriver'
    service_name: str
    provider: Optional[str] = None
    model_name: Optional[str] = None

    # exception class name
    error_type: str
    message: str
    # 'stream_open' | 'stream_loop' | 'timeout'
    stage: Optional[str] = None
    http_status: Optional[int] = None
    retryable: Optional[bool] = Field(None, description="Whether a retry might succeed.")

    # session id, chunk phase; never secrets
    context: Dict[str, Any] = Field(default_factory=dict)


class ServiceException(Exception):
    """Transport failure carrying a ServiceError. Raised to the caller, never absorbed."""

    def __init__(self, err: ServiceError):
        super().__init__(f"[{err.service_name}/{err.stage}] {err.error_type}: {err.message}")
        self.err = err

    @property
    def retryable(self) -> bool:
        return bool(self.err.retryable)


def mk_llm_error(
        exc: BaseException,
        stage: str,
        service_name: str,
        provider: str | None = None,
        model_name: str | None = None,
        http_status: int | None = None,
        retryable: bool | None = None,
        context: dict | None = None,
) -> ServiceError:
    return ServiceError(
        kind=ServiceKind.llm,
        service_name=service_name,
        provider=provider,
        model_name=model_name,
        error_type=type(exc).__name__,
        message=str(exc) or type(exc).__name__,
        stage=stage,
        http_status=http_status,
        retryable=retryable,
        context=context or {},
    )


def is_retryable(exc: BaseException) -> bool:
    """retry_if predicate: only retryable ServiceExceptions."""
    return isinstance(exc, ServiceException) and exc.retryable
