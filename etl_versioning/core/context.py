"""
Request and operation context for structured logs.

The correlation id of the HTTP request that started a restore is bound
into structlog contextvars. Restore operations add their own ids on top,
and asyncio tasks and worker threads copy the context when they start,
so per-source pointer moves log with the operation that caused them.
"""

import uuid
from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
import structlog


CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    요청 단위 correlation id

    - X-Correlation-ID 헤더 사용 (없으면 uuid4 생성)
    - structlog contextvars 에 바인딩
    - 응답 헤더로 반환
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            request_path=request.url.path,
            request_method=request.method,
        )

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def bind_context(**kwargs) -> None:
    """Bind additional context variables for logging."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


@contextmanager
def log_context(**kwargs) -> Iterator[None]:
    """블록 안에서만 유효한 로그 컨텍스트"""
    bind_context(**kwargs)
    try:
        yield
    finally:
        unbind_context(*kwargs)
