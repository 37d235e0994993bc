"""
재시도 로직 구현
저장소 일시 오류(DatabaseException, recoverable)에 대한 백오프 재시도

복원 태스크의 포인터 변경처럼 워커 스레드로 넘긴 저장소 연산을
코루틴 팩토리로 받아 재시도합니다.
"""

import asyncio
import random
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, Any

from ..exceptions import is_transient

logger = logging.getLogger(__name__)


class RetryStrategy(str, Enum):
    """재시도 전략"""
    FIXED = "fixed"                # 고정 간격
    LINEAR = "linear"              # 선형 증가
    EXPONENTIAL = "exponential"    # 지수 백오프


@dataclass(frozen=True)
class RetryConfig:
    """재시도 설정"""
    max_retries: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    base_delay: float = 1.0        # 기본 대기 시간 (초)
    max_delay: float = 60.0        # 최대 대기 시간 (초)
    jitter: bool = True
    jitter_range: Tuple[float, float] = (0.5, 1.5)

    # 예외를 받아 재시도 여부 반환 (None 이면 모든 예외 재시도)
    retry_condition: Optional[Callable[[Exception], bool]] = None


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """attempt(0부터) 이후 대기 시간"""
    if config.strategy == RetryStrategy.FIXED:
        delay = config.base_delay
    elif config.strategy == RetryStrategy.LINEAR:
        delay = config.base_delay * (attempt + 1)
    else:
        delay = config.base_delay * (2 ** attempt)

    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= random.uniform(*config.jitter_range)

    return delay


def should_retry(exception: Exception, config: RetryConfig) -> bool:
    if config.retry_condition is None:
        return True
    return config.retry_condition(exception)


async def retry_async_operation(
    operation: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
    **config_kwargs
) -> Any:
    """
    비동기 연산 재시도 헬퍼

    Args:
        operation: 호출할 때마다 새 awaitable 을 만드는 팩토리
        config: 재시도 설정 (없으면 config_kwargs 로 생성)

    Raises:
        마지막 시도의 예외, 또는 재시도 대상이 아닌 첫 예외
    """
    if config is None:
        config = RetryConfig(**config_kwargs)

    for attempt in range(config.max_retries + 1):
        try:
            return await operation()

        except Exception as e:
            if attempt >= config.max_retries or not should_retry(e, config):
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(
                f"재시도 예정 (attempt {attempt + 1}/{config.max_retries}, "
                f"delay {delay:.2f}s): {e}"
            )
            await asyncio.sleep(delay)


# ============================================
# 사전 정의된 재시도 설정
# ============================================

# 스냅샷 포인터 변경 등 저장소 연산용 (일시적 DB 오류만 재시도)
STORAGE_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    strategy=RetryStrategy.LINEAR,
    base_delay=0.2,
    max_delay=2.0,
    jitter=False,
    retry_condition=is_transient,
)


def storage_retry_config(max_retries: int = None, base_delay: float = None) -> RetryConfig:
    """STORAGE_RETRY_CONFIG 에 설정값 덮어쓰기"""
    overrides = {}
    if max_retries is not None:
        overrides["max_retries"] = max_retries
    if base_delay is not None:
        overrides["base_delay"] = base_delay
    return replace(STORAGE_RETRY_CONFIG, **overrides)
