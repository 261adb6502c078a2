from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


class EventLogger:
  """Audit trail of backup, restore and destination events as JSON lines."""

  def __init__(self, base_dir: Path) -> None:
    self.base_dir = Path(base_dir)
    self.base_dir.mkdir(parents=True, exist_ok=True)
    self.log_file = self.base_dir / 'events.log'
    self._lock = threading.Lock()

  def log_event(self, category: str, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
    entry = {
      'timestamp': datetime.now(timezone.utc).isoformat(),
      'category': category,
      'message': message,
      'payload': payload or {}
    }
    line = json.dumps(entry, default=str) + '\n'
    with self._lock, self.log_file.open('a', encoding='utf-8') as handle:
      handle.write(line)

  def log_error(self, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
    self.log_event('error', message, payload)

  def recent(self, limit: int = 200, category: Optional[str] = None) -> List[Dict[str, Any]]:
    if not self.log_file.exists():
      return []
    lines = self.log_file.read_text(encoding='utf-8').splitlines()
    entries = []
    for line in lines:
      try:
        entry = json.loads(line)
      except json.JSONDecodeError:
        logging.warning('Malformed log line: %s', line)
        continue
      if category and entry.get('category') != category:
        continue
      entries.append(entry)
    return entries[-limit:]
