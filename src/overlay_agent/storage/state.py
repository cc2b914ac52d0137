"""
State Persistence Module
オーバーレイ状態ファイルの永続化（JSON / JSONL）
アトミック書き込み実装

All state lives in plain files under the overlay state directory. A single
process per identity is assumed; there is no file locking.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and ``Z`` suffix"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ============================================================================
# Low-level file helpers
# ============================================================================

def _atomic_write_text(path: Path, text: str) -> None:
    """一時ファイルに書き込んでからリネーム（アトミック操作）"""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError:
        if temp_path.exists():
            temp_path.unlink()
        raise


def read_json(path: Path, default: Any = None) -> Any:
    """JSONファイルを読み込み

    Args:
        path: ファイルパス
        default: ファイルが存在しない場合の値

    Returns:
        デコードされた値
    """
    path = Path(path)
    if not path.exists():
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: Path, data: Any) -> None:
    """JSONファイルへ保存（アトミック書き込み）"""
    _atomic_write_text(Path(path), json.dumps(data, indent=2, ensure_ascii=False))


def delete_file(path: Path) -> bool:
    path = Path(path)
    if path.exists():
        path.unlink()
        return True
    return False


def append_jsonl(path: Path, record: Dict[str, Any]) -> None:
    """Append one record as a single JSON line"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")


def read_jsonl(path: Path) -> List[Dict[str, Any]]:
    """Read every parseable line of a JSONL file; corrupt lines are skipped"""
    path = Path(path)
    if not path.exists():
        return []
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping corrupt line {line_no} in {path}: {e}")
    return records


def rewrite_jsonl(path: Path, records: List[Dict[str, Any]]) -> None:
    """Replace a JSONL file's contents in one atomic write"""
    body = "".join(json.dumps(r, ensure_ascii=False) + "\n" for r in records)
    _atomic_write_text(Path(path), body)


def update_jsonl(path: Path, match: Callable[[Dict[str, Any]], bool],
                 update: Callable[[Dict[str, Any]], Dict[str, Any]]) -> int:
    """Rewrite the log, applying ``update`` to every record ``match`` selects.

    Returns:
        Number of records updated
    """
    records = read_jsonl(path)
    updated = 0
    for i, record in enumerate(records):
        if match(record):
            records[i] = update(record)
            updated += 1
    if updated:
        rewrite_jsonl(path, records)
    return updated


# ============================================================================
# Typed stores
# ============================================================================

class StateStore:
    """Named accessors for the overlay state files of one identity"""

    def __init__(self, config):
        self.config = config

    # Wallet identity -------------------------------------------------------

    def load_wallet_identity(self) -> Optional[Dict[str, Any]]:
        return read_json(self.config.wallet_identity_path)

    # Registration ----------------------------------------------------------

    def load_registration(self) -> Optional[Dict[str, Any]]:
        return read_json(self.config.registration_path)

    def save_registration(self, registration: Dict[str, Any]) -> None:
        write_json(self.config.registration_path, registration)

    def delete_registration(self) -> bool:
        return delete_file(self.config.registration_path)

    # Services --------------------------------------------------------------

    def load_services(self) -> List[Dict[str, Any]]:
        return read_json(self.config.services_path, default=[]) or []

    def save_services(self, services: List[Dict[str, Any]]) -> None:
        write_json(self.config.services_path, services)

    # Stored change ---------------------------------------------------------

    def load_stored_change(self) -> Optional[Dict[str, Any]]:
        try:
            return read_json(self.config.latest_change_path)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable stored change: {e}")
            return None

    def save_stored_change(self, change: Dict[str, Any]) -> None:
        write_json(self.config.latest_change_path, change)

    def delete_stored_change(self) -> bool:
        return delete_file(self.config.latest_change_path)

    # Notifications ---------------------------------------------------------

    def append_notification(self, record: Dict[str, Any]) -> None:
        append_jsonl(self.config.notifications_path, record)
