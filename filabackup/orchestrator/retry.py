from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from filabackup.errors import NetworkError
from filabackup.logging.event_logger import EventLogger

logger = logging.getLogger(__name__)

T = TypeVar('T')


class TransferRetry:
  """Bounded retry of transient transfer failures with capped exponential backoff."""

  def __init__(
    self,
    attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 8.0,
    event_logger: Optional[EventLogger] = None,
    sleep: Callable[[float], None] = time.sleep
  ) -> None:
    self.attempts = max(attempts, 1)
    self.base_delay = base_delay
    self.max_delay = max_delay
    self._event_logger = event_logger
    self._sleep = sleep

  def delay_for(self, attempt: int) -> float:
    return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))

  def run(self, operation: Callable[[], T], context: Optional[Dict[str, Any]] = None) -> T:
    attempt = 0
    while True:
      attempt += 1
      try:
        return operation()
      except NetworkError as exc:
        logger.warning('Transfer attempt %s/%s failed (%s): %s', attempt, self.attempts, context or {}, exc)
        if attempt >= self.attempts:
          raise
        if self._event_logger:
          self._event_logger.log_error(
            'transfer_retry',
            {**(context or {}), 'attempt': attempt, 'error': str(exc)}
          )
        self._sleep(self.delay_for(attempt))
