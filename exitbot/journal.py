from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional


class ExitJournal:
    """Marks a withdraw whose follow-up swap has not been confirmed submitted.

    The file exists only between a successful withdraw and a successful
    exchange; finding it on startup means funds may sit unswapped in the
    wallet.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def pending(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {"withdraw_tx": None, "corrupt": True}
        if not isinstance(raw, dict):
            return {"withdraw_tx": None, "corrupt": True}
        return raw

    def record_withdraw(self, tx_hash: str) -> Dict[str, Any]:
        payload = {
            "withdraw_tx": str(tx_hash),
            "recorded_at_ms": int(time.time() * 1000),
            "pid": os.getpid(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        os.replace(tmp, self.path)
        return payload

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
