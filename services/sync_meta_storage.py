from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from core.settings import SYNC_META_PATH
from datetime_utils import ensure_utc, parse_rfc3339, to_rfc3339_utc, utc_now


class SyncMetaStorage:
    """Small JSON file holding sync timestamps that must survive restarts."""

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path or SYNC_META_PATH)

    # ------------------------------------------------------------------
    # generic helpers
    def _load(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)

    def _get_timestamp(self, key: str) -> Optional[datetime]:
        value = self._load().get(key)
        return parse_rfc3339(value) if isinstance(value, str) else None

    def _set_timestamp(self, key: str, moment: Optional[datetime]) -> datetime:
        value = ensure_utc(moment) if moment else utc_now()
        data = self._load()
        data[key] = to_rfc3339_utc(value)
        self._save(data)
        return value

    # ------------------------------------------------------------------
    def get_last_successful_sync(self) -> Optional[datetime]:
        return self._get_timestamp("lastSuccessfulSync")

    def set_last_successful_sync(self, moment: Optional[datetime] = None) -> datetime:
        return self._set_timestamp("lastSuccessfulSync", moment)

    def get_last_pull(self) -> Optional[datetime]:
        return self._get_timestamp("lastPullAt")

    def set_last_pull(self, moment: Optional[datetime] = None) -> datetime:
        return self._set_timestamp("lastPullAt", moment)

    def clear_all(self) -> None:
        if self.path.exists():
            self.path.unlink()


__all__ = ["SyncMetaStorage"]
