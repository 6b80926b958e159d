import asyncio
import logging
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import logfire

from .errors import HubError
from .models import CapabilityKind, CapabilityRecord, Collision, SessionState
from .session import SessionManager


def optional_params_hint(schema: Dict[str, Any]) -> str:
    """Description suffix telling the model that a tool takes no required input."""
    properties = list((schema or {}).get("properties", {}).keys())
    required = (schema or {}).get("required", [])
    if not properties or required:
        return ""
    return (
        f" (All parameters are optional: {', '.join(properties)}. "
        "You can call this with no arguments or {} to get all results.)"
    )


class CapabilityDirectory:
    """
    Immutable snapshot of every capability across all servers.

    Within one snapshot each (kind, name) pair maps to exactly one owner.
    """

    def __init__(
        self,
        records: Iterable[CapabilityRecord] = (),
        collisions: Sequence[Collision] = (),
        version: int = 0,
        built_at: Optional[datetime] = None,
    ):
        entries: Dict[Tuple[CapabilityKind, str], CapabilityRecord] = {}
        for record in records:
            entries.setdefault((record.kind, record.name), record)
        self._entries = MappingProxyType(entries)
        self._collisions = tuple(collisions)
        self.version = version
        self.built_at = built_at or datetime.now()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Tuple[CapabilityKind, str]) -> bool:
        return key in self._entries

    @property
    def collisions(self) -> Tuple[Collision, ...]:
        return self._collisions

    def lookup(self, kind: CapabilityKind, name: str) -> Optional[CapabilityRecord]:
        return self._entries.get((kind, name))

    def owner_of(self, tool_name: str) -> Optional[str]:
        record = self.lookup(CapabilityKind.TOOL, tool_name)
        return record.server_id if record else None

    def _of_kind(self, kind: CapabilityKind) -> List[CapabilityRecord]:
        return [record for (k, _), record in self._entries.items() if k == kind]

    def tools(self) -> List[CapabilityRecord]:
        return self._of_kind(CapabilityKind.TOOL)

    def resources(self) -> List[CapabilityRecord]:
        return self._of_kind(CapabilityKind.RESOURCE)

    def prompts(self) -> List[CapabilityRecord]:
        return self._of_kind(CapabilityKind.PROMPT)

    def tool_specs(self) -> List[Dict[str, Any]]:
        """Provider-neutral tool schemas for binding to a model call."""
        specs = []
        for record in self.tools():
            schema = record.input_schema or {"type": "object", "properties": {}}
            specs.append(
                {
                    "name": record.name,
                    "description": (record.description or record.name)
                    + optional_params_hint(schema),
                    "input_schema": schema,
                }
            )
        return specs

    def summary(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "built_at": self.built_at.isoformat(),
            "tools": len(self.tools()),
            "resources": len(self.resources()),
            "prompts": len(self.prompts()),
            "collisions": [c.model_dump(mode="json") for c in self._collisions],
        }


def merge_capabilities(
    per_server: Sequence[Tuple[str, Sequence[CapabilityRecord]]],
    version: int = 0,
    logger: Optional[logging.Logger] = None,
) -> CapabilityDirectory:
    """
    Merge per-server capability lists into one directory.

    Servers are merged in the order given; the first server to claim a
    (kind, name) keeps it and later claimants are recorded as collisions.
    """
    logger = logger or logging.getLogger("CapabilityAggregator")
    owners: Dict[Tuple[CapabilityKind, str], CapabilityRecord] = {}
    collisions: List[Collision] = []

    for server_id, records in per_server:
        for record in records:
            key = (record.kind, record.name)
            existing = owners.get(key)
            if existing is None:
                owners[key] = record
                continue
            if existing.server_id == server_id:
                logger.debug(f"{server_id} listed {record.kind.value} {record.name} twice")
                continue
            collisions.append(
                Collision(
                    kind=record.kind,
                    name=record.name,
                    owner=existing.server_id,
                    rejected=server_id,
                )
            )
            logger.warning(
                f"{record.kind.value} '{record.name}' from {server_id} collides with "
                f"{existing.server_id}; keeping {existing.server_id}"
            )

    return CapabilityDirectory(owners.values(), collisions, version=version)


class CapabilityAggregator:
    """Pull-based merge of every live session's capabilities."""

    def __init__(
        self, session_manager: SessionManager, logger: Optional[logging.Logger] = None
    ):
        self.session_manager = session_manager
        self.logger = logger or logging.getLogger("CapabilityAggregator")
        self._directory = CapabilityDirectory()
        self._refresh_lock = asyncio.Lock()
        self.last_errors: Dict[str, str] = {}

    @property
    def directory(self) -> CapabilityDirectory:
        """The current snapshot. Readers keep whatever snapshot they took."""
        return self._directory

    async def refresh(self) -> CapabilityDirectory:
        """
        Re-list every non-closed server and swap in a new snapshot.

        Servers are listed concurrently, merged in registration order.
        A server that cannot be listed contributes nothing to the new
        snapshot and its error is kept in ``last_errors``.
        """
        async with self._refresh_lock:
            with logfire.span("capability_aggregator.refresh"):
                server_ids = [
                    sid
                    for sid in self.session_manager.server_ids
                    if self.session_manager.get_config(sid).enabled
                    and self.session_manager.get_session(sid).state != SessionState.CLOSED
                ]
                listings = await asyncio.gather(
                    *(self._list_server(sid) for sid in server_ids)
                )

                errors = {sid: err for sid, _, err in listings if err is not None}
                directory = merge_capabilities(
                    [(sid, records) for sid, records, _ in listings],
                    version=self._directory.version + 1,
                    logger=self.logger,
                )
                self._directory = directory
                self.last_errors = errors

                self.logger.info(
                    f"Capability directory v{directory.version}: "
                    f"{len(directory.tools())} tools, {len(directory.resources())} resources, "
                    f"{len(directory.prompts())} prompts from {len(server_ids) - len(errors)}"
                    f"/{len(server_ids)} servers"
                )
                return directory

    async def _list_server(
        self, server_id: str
    ) -> Tuple[str, List[CapabilityRecord], Optional[str]]:
        try:
            records = await self.session_manager.list_capabilities(server_id)
            return server_id, records, None
        except HubError as e:
            self.logger.warning(f"Skipping {server_id} in capability refresh: {e}")
            return server_id, [], f"{e.kind}: {e}"
