"""Permission audit trail.

Every role change, grant, revoke, bulk item, template application and rule
change produces one :class:`PermissionAuditEntry` per affected user.
Decision checks made through the service are audited too, when enabled.

Writes go to the store (primary, awaited) and optionally to daily JSONL
files (secondary, fire-and-forget).  Neither ever raises into the audited
operation: a failed primary write is logged and reported back as
``AuditStatus.DEGRADED`` so operators can alert on it.

Categories:

* **MUTATION** -- role/permission/rule/template changes
* **DECISION** -- read-only permission checks
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from datetime import datetime
from pathlib import Path

from mindspace_access.schemas import AuditStatus, PermissionAuditEntry
from mindspace_access.services.store import PermissionStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event category enum
# ---------------------------------------------------------------------------


class AuditEventCategory(str, enum.Enum):
    MUTATION = "mutation"
    DECISION = "decision"


_MUTATION_KEYWORDS = {
    "update",
    "assign",
    "revoke",
    "grant",
    "apply",
    "create",
    "delete",
    "bulk",
}


def classify_action(action: str) -> AuditEventCategory:
    """Map an action string (``role.update``, ``permission.check``) to a category."""
    parts = action.lower().replace(".", "_").split("_")
    if any(part in _MUTATION_KEYWORDS for part in parts):
        return AuditEventCategory.MUTATION
    if "check" in parts or "access" in parts:
        return AuditEventCategory.DECISION
    # Unknown actions are kept with the mutations
    return AuditEventCategory.MUTATION


def to_json_line(entry: PermissionAuditEntry) -> str:
    payload = entry.model_dump(mode="json")
    payload["category"] = classify_action(entry.action).value
    return json.dumps(payload, default=str, sort_keys=True)


# ---------------------------------------------------------------------------
# JSONL mirror
# ---------------------------------------------------------------------------


class JsonlAuditMirror:
    """Appends audit entries to one JSONL file per UTC day.

    Files are only ever opened in append mode.
    """

    def __init__(self, base_path: str) -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._pending: set[asyncio.Task[None]] = set()

    def path_for(self, dt: datetime) -> Path:
        return self.base_path / f"{dt.strftime('%Y-%m-%d')}.jsonl"

    def write_sync(self, entry: PermissionAuditEntry) -> None:
        with open(self.path_for(entry.timestamp), "a", encoding="utf-8") as f:
            f.write(to_json_line(entry) + "\n")

    async def write_async(self, entry: PermissionAuditEntry) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.write_sync, entry)

    def fire_and_forget(self, entry: PermissionAuditEntry) -> None:
        """Schedule the write without awaiting.  Failures are logged only."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop -- write inline
            try:
                self.write_sync(entry)
            except Exception:
                logger.exception("Audit mirror write failed (sync fallback)")
            return
        task = loop.create_task(self._safe_write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for scheduled writes (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _safe_write(self, entry: PermissionAuditEntry) -> None:
        try:
            await self.write_async(entry)
        except Exception:
            logger.exception("Audit mirror write failed for user %s", entry.user_id)


# ---------------------------------------------------------------------------
# Auditor
# ---------------------------------------------------------------------------


class PermissionAuditor:
    """Best-effort writer in front of the store's append-only audit table."""

    def __init__(
        self,
        store: PermissionStore,
        mirror: JsonlAuditMirror | None = None,
        audit_checks: bool = True,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.audit_checks = audit_checks

    async def record(self, entry: PermissionAuditEntry) -> AuditStatus:
        if (
            not self.audit_checks
            and classify_action(entry.action) is AuditEventCategory.DECISION
        ):
            return AuditStatus.SKIPPED

        status = AuditStatus.WRITTEN
        try:
            await self.store.append_audit_entry(entry)
        except Exception:
            # Never propagates into the audited operation
            logger.exception(
                "AUDIT DEGRADED: failed to write %s entry for user %s (actor %s)",
                entry.action,
                entry.user_id,
                entry.actor_id,
            )
            status = AuditStatus.DEGRADED

        if self.mirror is not None:
            self.mirror.fire_and_forget(entry)
        return status

    async def query(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[PermissionAuditEntry]:
        return await self.store.list_audit_entries(user_id=user_id, start=start, end=end)
