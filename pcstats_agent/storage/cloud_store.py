"""
Cloud Snapshot Store

Writes snapshots to the hosted database through the Supabase REST API
(PostgREST over HTTPS).

REST calls are not one transaction, so multi-row writes compensate:
if a step after the snapshot insert fails, the snapshot row is deleted
again (child rows cascade) before the error propagates.

Error mapping:
- Timeouts, connection errors, 502/503/504 -> StoreUnavailableError
- Any other non-2xx response               -> StoreError
- Response body that is not a row list     -> StoreError
"""

from datetime import timedelta
from typing import Any, Optional

import httpx

from ..common.exceptions import RestoreError, StoreError, StoreUnavailableError
from ..common.logging_setup import get_service_logger
from .base import ProcessSnapshot, SnapshotStore
from .models import PendingRecord, ProcessSample, TemperatureSample, utc_now

logger = get_service_logger("cloud_store")

UNAVAILABLE_STATUS = (502, 503, 504)


class CloudStore(SnapshotStore):
    """Supabase-backed snapshot store"""

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            supabase_url: Supabase project URL
            supabase_key: Service role key
            timeout_s: Per-request timeout; a timeout counts as unavailability
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.supabase_url = supabase_url.rstrip("/")
        self.supabase_key = supabase_key
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.supabase_url,
                headers={
                    "apikey": self.supabase_key,
                    "Authorization": f"Bearer {self.supabase_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout_s,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: dict | None = None,
        json: Any = None,
        prefer: str = "return=minimal",
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(
                method, path, params=params, json=json, headers={"Prefer": prefer}
            )
        except httpx.TimeoutException as e:
            raise StoreUnavailableError("Request timeout", operation=operation) from e
        except httpx.TransportError as e:
            raise StoreUnavailableError(f"Connection failed: {e}", operation=operation) from e

        if response.status_code in UNAVAILABLE_STATUS:
            raise StoreUnavailableError(f"HTTP {response.status_code}", operation=operation)
        if response.status_code >= 400:
            raise StoreError(
                f"HTTP {response.status_code}: {response.text}",
                operation=operation,
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _rows(response: httpx.Response, operation: str) -> list[dict]:
        """Decode a PostgREST row list. A non-JSON body (proxy or portal page) is a StoreError."""
        try:
            rows = response.json()
        except ValueError as e:
            raise StoreError(f"Unexpected response body: {response.text[:200]!r}", operation=operation) from e
        if not isinstance(rows, list):
            raise StoreError(f"Expected a row list, got {type(rows).__name__}", operation=operation)
        return rows

    @staticmethod
    def _first_id(rows: list[dict], column: str, operation: str) -> int:
        try:
            return int(rows[0][column])
        except (IndexError, KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Response row has no {column}", operation=operation) from e

    # ============================================
    # LIFECYCLE
    # ============================================

    async def initialize(self) -> None:
        if not await self.is_available():
            raise StoreUnavailableError(f"Cannot reach {self.supabase_url}", operation="initialize")
        logger.info(f"Cloud store reachable at {self.supabase_url}")

    async def is_available(self) -> bool:
        try:
            await self._request(
                "GET", "/rest/v1/snapshots", "is_available",
                params={"select": "snapshot_id", "limit": "1"},
            )
            return True
        except StoreError as e:
            logger.debug(f"Availability check failed: {e}")
            return False

    # ============================================
    # ROW HELPERS
    # ============================================

    async def _insert_snapshot(self, timestamp_iso: str, cpu_percent, used_memory_mb, available_memory_mb) -> int:
        response = await self._request(
            "POST", "/rest/v1/snapshots", "create_snapshot",
            json={
                "snapshot_timestamp": timestamp_iso,
                "total_cpu_usage": cpu_percent,
                "total_memory_usage_mb": used_memory_mb,
                "total_available_memory_mb": available_memory_mb,
            },
            prefer="return=representation",
        )
        rows = self._rows(response, "create_snapshot")
        if not rows:
            raise StoreError("Snapshot insert returned no row", operation="create_snapshot")
        return self._first_id(rows, "snapshot_id", "create_snapshot")

    async def _delete_snapshot(self, snapshot_id: int) -> None:
        """Compensate a partially written cycle. Failure is logged, not raised."""
        try:
            await self._request(
                "DELETE", "/rest/v1/snapshots", "delete_snapshot",
                params={"snapshot_id": f"eq.{snapshot_id}"},
            )
        except StoreError as e:
            logger.error(f"Could not roll back partial snapshot {snapshot_id}: {e}")

    async def _snapshot_exists(self, snapshot_id: int) -> bool:
        response = await self._request(
            "GET", "/rest/v1/snapshots", "snapshot_exists",
            params={"select": "snapshot_id", "snapshot_id": f"eq.{snapshot_id}"},
        )
        return bool(self._rows(response, "snapshot_exists"))

    @staticmethod
    def _process_row(snapshot_id: int, process_id: int, sample: ProcessSample) -> dict:
        return {
            "snapshot_id": snapshot_id,
            "process_id": process_id,
            "pid": sample.pid,
            "cpu_usage": sample.cpu_percent,
            "memory_usage_mb": sample.memory_mb,
            "private_memory_mb": sample.private_memory_mb,
            "virtual_memory_mb": sample.virtual_memory_mb,
            "vram_usage_mb": sample.vram_mb,
            "thread_count": sample.thread_count,
            "handle_count": sample.handle_count,
        }

    # ============================================
    # WRITE CONTRACT
    # ============================================

    async def create_snapshot(self, cpu_percent, used_memory_mb, available_memory_mb) -> int:
        return await self._insert_snapshot(utc_now().isoformat(), cpu_percent, used_memory_mb, available_memory_mb)

    async def get_or_create_process(self, process_name: str, process_path: Optional[str]) -> int:
        now = utc_now().isoformat()
        response = await self._request(
            "GET", "/rest/v1/processes", "get_or_create_process",
            params={
                "select": "process_id",
                "process_name": f"eq.{process_name}",
                "process_path": f"eq.{process_path}" if process_path is not None else "is.null",
                "limit": "1",
            },
        )
        rows = self._rows(response, "get_or_create_process")
        if rows:
            process_id = self._first_id(rows, "process_id", "get_or_create_process")
            await self._request(
                "PATCH", "/rest/v1/processes", "get_or_create_process",
                params={"process_id": f"eq.{process_id}"},
                json={"last_seen": now},
            )
            return process_id

        response = await self._request(
            "POST", "/rest/v1/processes", "get_or_create_process",
            json={"process_name": process_name, "process_path": process_path, "first_seen": now, "last_seen": now},
            prefer="return=representation",
        )
        return self._first_id(self._rows(response, "get_or_create_process"), "process_id", "get_or_create_process")

    async def create_process_snapshot(self, snapshot_id: int, process_id: int, sample: ProcessSample) -> None:
        await self.batch_create_process_snapshots(snapshot_id, [(process_id, sample)])

    async def batch_create_process_snapshots(self, snapshot_id: int, process_snapshots: list[ProcessSnapshot]) -> None:
        if not process_snapshots:
            return
        await self._request(
            "POST", "/rest/v1/process_snapshots", "batch_create_process_snapshots",
            json=[self._process_row(snapshot_id, pid, sample) for pid, sample in process_snapshots],
        )

    async def create_temperature(self, snapshot_id: int, sample: TemperatureSample) -> None:
        await self._request(
            "POST", "/rest/v1/cpu_temperatures", "create_temperature",
            json={"snapshot_id": snapshot_id, **sample.to_dict()},
        )

    async def create_snapshot_with_data(
        self,
        cpu_percent,
        used_memory_mb,
        available_memory_mb,
        process_snapshots: list[ProcessSnapshot],
        temperature: Optional[TemperatureSample],
    ) -> int:
        snapshot_id = await self._insert_snapshot(
            utc_now().isoformat(), cpu_percent, used_memory_mb, available_memory_mb
        )
        try:
            await self.batch_create_process_snapshots(snapshot_id, process_snapshots)
            if temperature is not None:
                await self.create_temperature(snapshot_id, temperature)
        except StoreError:
            await self._delete_snapshot(snapshot_id)
            raise
        return snapshot_id

    # ============================================
    # RESTORE
    # ============================================

    async def restore_batch(self, record: PendingRecord) -> int:
        created_here = record.system_sample is not None
        if created_here:
            system = record.system_sample
            snapshot_id = await self._insert_snapshot(
                record.created_at.isoformat(),
                system.cpu_percent, system.used_memory_mb, system.available_memory_mb,
            )
        else:
            snapshot_id = record.local_snapshot_id
            if not await self._snapshot_exists(snapshot_id):
                raise RestoreError(f"snapshot {snapshot_id} does not exist", batch_id=record.batch_id)

        try:
            for entry in record.process_samples:
                sample = entry.sample
                try:
                    process_id = await self.get_or_create_process(sample.process_name, sample.process_path)
                    await self.create_process_snapshot(snapshot_id, process_id, sample)
                except StoreUnavailableError:
                    raise
                except StoreError as e:
                    logger.warning(
                        f"Failed to restore process {sample.process_name!r} in batch {record.batch_id}: {e}"
                    )

            if record.temperature_sample is not None:
                try:
                    await self.create_temperature(snapshot_id, record.temperature_sample)
                except StoreUnavailableError:
                    raise
                except StoreError as e:
                    logger.warning(f"Failed to restore CPU temperature in batch {record.batch_id}: {e}")
        except StoreError:
            if created_here:
                await self._delete_snapshot(snapshot_id)
            raise

        logger.info(
            f"Restored offline batch {record.batch_id} (local snapshot {record.local_snapshot_id}) "
            f"as snapshot {snapshot_id} with {len(record.process_samples)} processes"
        )
        return snapshot_id

    # ============================================
    # RETENTION
    # ============================================

    async def cleanup_old_snapshots(self, days_to_keep: int) -> int:
        cutoff = (utc_now() - timedelta(days=days_to_keep)).isoformat()
        response = await self._request(
            "DELETE", "/rest/v1/snapshots", "cleanup_old_snapshots",
            params={"snapshot_timestamp": f"lt.{cutoff}", "select": "snapshot_id"},
            prefer="return=representation",
        )
        deleted = len(self._rows(response, "cleanup_old_snapshots"))
        if deleted:
            logger.info(f"Cleanup: deleted {deleted} snapshots older than {days_to_keep} days")
        return deleted
