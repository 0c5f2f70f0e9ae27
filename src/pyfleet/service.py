"""Ingestion service: the async orchestrator of the fleet core.

Every vehicle gets a single worker task that drains an inbox of events
(sample arrived, tick fired, offline signal, manual save) in order.  All
mutation of that vehicle's live state and trail buffer happens inside its
worker, so ``upsert``/``append``/``tick`` for one vehicle never interleave,
while different vehicles progress independently.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Hashable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from pyfleet._mqtt import FleetMqttRuntime
from pyfleet._redact import redact_for_log
from pyfleet.config import FleetConfig
from pyfleet.exceptions import FleetError, InsufficientDataError, RepositoryUnavailableError
from pyfleet.history.repair import DuplicateReport, resolve_duplicates, route_natural_key
from pyfleet.history.repository import InMemoryRouteRepository, RouteHistoryRepository
from pyfleet.history.sqlite import SqliteRouteRepository
from pyfleet.ingestion.events import DropReason, IngestionStats
from pyfleet.ingestion.filter import Debouncer, ReporterFilter
from pyfleet.models.location import LatLng, LocationReport, LocationSample
from pyfleet.models.route import RouteFilter, RouteSegment, SegmentOwner, TrailPoint
from pyfleet.models.vehicle import FleetSnapshot, VehicleState, VehicleStatus
from pyfleet.state.store import FleetStateStore
from pyfleet.state.trail import TrailAccumulator

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of offering one report to the pipeline."""

    accepted: bool
    reason: DropReason | None = None


@dataclass(frozen=True)
class _SampleArrived:
    report: LocationReport
    sample: LocationSample


@dataclass(frozen=True)
class _TickFired:
    now: datetime
    future: asyncio.Future[RouteSegment | None]


@dataclass(frozen=True)
class _WentOffline:
    at: datetime
    report: LocationReport | None = None


@dataclass(frozen=True)
class _ManualSave:
    name: str | None
    notes: str | None
    now: datetime
    future: asyncio.Future[RouteSegment]


_InboxEvent = _SampleArrived | _TickFired | _WentOffline | _ManualSave


@dataclass
class _VehicleWorker:
    inbox: asyncio.Queue[_InboxEvent] = field(default_factory=asyncio.Queue)
    task: asyncio.Task[None] | None = None


class IngestionService:
    """Fleet ingestion, live state and route history behind one async API.

    Usage::

        async with IngestionService(FleetConfig.from_env()) as service:
            service.submit(report)
            fleet = service.get_live_fleet("company-1")
    """

    def __init__(
        self,
        config: FleetConfig | None = None,
        *,
        repository: RouteHistoryRepository | None = None,
        clock: Callable[[], datetime] = _utcnow,
        start_ticker: bool = True,
    ) -> None:
        self._config = config or FleetConfig()
        self._clock = clock
        self._repository = repository
        self._owns_repository = repository is None
        self._start_ticker = start_ticker
        self._store = FleetStateStore(
            clock=clock,
            online_window_seconds=self._config.online_window_s,
            stale_after_seconds=self._config.stale_after_s,
        )
        self._trails = TrailAccumulator(
            min_spacing_seconds=self._config.trail_spacing_s,
            min_points=self._config.auto_save_min_points,
            auto_save_interval_seconds=self._config.auto_save_interval_s,
            min_distance_km=self._config.min_route_distance_km,
            carry_forward=self._config.carry_forward,
        )
        self._debouncer = Debouncer(self._config.debounce_s)
        self._filters: dict[str, ReporterFilter] = {}
        self._workers: dict[str, _VehicleWorker] = {}
        self._failed_segments: list[RouteSegment] = []
        self._ticker: asyncio.Task[None] | None = None
        self._mqtt_runtime: FleetMqttRuntime | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.stats = IngestionStats()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> IngestionService:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self._repository is None:
            if self._config.database_path:
                self._repository = SqliteRouteRepository.open(self._config.database_path)
            else:
                self._repository = InMemoryRouteRepository()
        if self._start_ticker and self._ticker is None:
            self._ticker = asyncio.create_task(self._run_ticker(), name="pyfleet-ticker")
        self._start_mqtt()

    async def close(self) -> None:
        """Stop the ticker, the MQTT feed and all vehicle workers.

        Buffered trails are not flushed; an abandoned in-flight save leaves
        its vehicle's buffer as it was before the save.
        """
        self._stop_mqtt()
        ticker = self._ticker
        self._ticker = None
        if ticker is not None:
            ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker

        tasks = [w.task for w in self._workers.values() if w.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # Cancel waiters of events that never reached a worker so callers don't hang
        for worker in self._workers.values():
            while not worker.inbox.empty():
                pending = worker.inbox.get_nowait()
                future = getattr(pending, "future", None)
                if future is not None and not future.done():
                    future.cancel()
        self._workers.clear()

        if self._owns_repository and isinstance(self._repository, SqliteRouteRepository):
            self._repository.close()
        self._loop = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_repository(self) -> RouteHistoryRepository:
        if self._repository is None:
            raise FleetError("Service not started. Use 'async with IngestionService(...) as service:'")
        return self._repository

    def _worker(self, vehicle_id: str) -> _VehicleWorker:
        worker = self._workers.get(vehicle_id)
        if worker is None:
            worker = _VehicleWorker()
            worker.task = asyncio.create_task(self._run_worker(vehicle_id, worker), name=f"pyfleet-vehicle-{vehicle_id}")
            self._workers[vehicle_id] = worker
        return worker

    def _filter(self, vehicle_id: str) -> ReporterFilter:
        reporter = self._filters.get(vehicle_id)
        if reporter is None:
            reporter = ReporterFilter(
                max_accuracy_m=self._config.max_accuracy_m,
                min_interval_seconds=self._config.min_update_interval_s,
                min_distance_m=self._config.min_distance_m,
            )
            self._filters[vehicle_id] = reporter
        return reporter

    def _drop(self, reason: DropReason, report: LocationReport | Mapping[str, Any] | None) -> SubmitResult:
        self.stats.record_drop(reason)
        if _logger.isEnabledFor(logging.DEBUG):
            raw = report.raw if isinstance(report, LocationReport) else report
            _logger.debug("Dropped report reason=%s payload=%s", reason, redact_for_log(raw))
        return SubmitResult(accepted=False, reason=reason)

    async def _persist(self, segment: RouteSegment) -> str:
        repository = self._require_repository()
        try:
            return await asyncio.wait_for(repository.persist(segment), timeout=self._config.persist_timeout_s)
        except TimeoutError as exc:
            raise RepositoryUnavailableError(
                f"persist of segment {segment.id} timed out after {self._config.persist_timeout_s}s",
                operation="persist",
            ) from exc

    async def _was_committed(self, segment: RouteSegment) -> bool | None:
        """Look *segment* up after an interrupted persist.

        Returns None when storage cannot answer either, in which case the
        write has to be treated as possibly committed.
        """
        repository = self._require_repository()
        try:
            stored = await asyncio.wait_for(repository.get(segment.id), timeout=self._config.persist_timeout_s)
        except (TimeoutError, FleetError):
            _logger.warning("Could not confirm whether segment %s was stored", segment.id, exc_info=True)
            return None
        return stored is not None

    def _hold(self, segment: RouteSegment) -> None:
        if all(held.id != segment.id for held in self._failed_segments):
            self._failed_segments.append(segment)

    async def _read(self, operation: str, coro: Any) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self._config.persist_timeout_s)
        except TimeoutError as exc:
            raise RepositoryUnavailableError(f"route history {operation} timed out", operation=operation) from exc

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def submit_payload(self, payload: Mapping[str, Any]) -> SubmitResult:
        """Validate a raw producer message and submit it."""
        self.stats.received += 1
        try:
            report = LocationReport.model_validate(payload)
        except ValidationError:
            return self._drop(DropReason.MALFORMED, payload)
        return self._submit(report)

    def submit(self, report: LocationReport) -> SubmitResult:
        """Offer a report to the pipeline.

        Never raises for bad data: rejected reports are counted and the
        reason is returned.  Accepted reports are queued to the vehicle's
        worker.
        """
        self.stats.received += 1
        return self._submit(report)

    def _submit(self, report: LocationReport) -> SubmitResult:
        now = self._clock()
        if report.offline:
            self._worker(report.vehicle_id).inbox.put_nowait(_WentOffline(at=report.captured_at or now, report=report))
            return SubmitResult(accepted=True)

        if not self._debouncer.allow(report.vehicle_id, now):
            return self._drop(DropReason.DEBOUNCED, report)

        sample = report.to_sample(default_captured_at=now)
        reason = self._filter(report.vehicle_id).offer(sample, now)
        if reason is not None:
            return self._drop(reason, report)

        self.stats.accepted += 1
        self._worker(report.vehicle_id).inbox.put_nowait(_SampleArrived(report=report, sample=sample))
        return SubmitResult(accepted=True)

    def mark_offline(self, vehicle_id: str, at: datetime | None = None) -> None:
        """Record the producer's explicit "went offline" signal."""
        self._worker(vehicle_id).inbox.put_nowait(_WentOffline(at=at or self._clock()))

    async def drain(self) -> None:
        """Wait until every vehicle inbox has been processed."""
        await asyncio.gather(*(w.inbox.join() for w in list(self._workers.values())))

    # ------------------------------------------------------------------
    # Per-vehicle worker
    # ------------------------------------------------------------------

    async def _run_worker(self, vehicle_id: str, worker: _VehicleWorker) -> None:
        while True:
            event = await worker.inbox.get()
            try:
                await self._handle(vehicle_id, event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # One vehicle's bad data must not stop its own or anyone else's worker.
                self.stats.worker_errors += 1
                _logger.warning("Vehicle worker %s failed on %s", vehicle_id, type(event).__name__, exc_info=True)
                future = getattr(event, "future", None)
                if future is not None and not future.done():
                    future.set_exception(exc)
            finally:
                worker.inbox.task_done()
            if isinstance(event, _TickFired) and worker.inbox.empty() and self._is_idle(vehicle_id, event.now):
                self._evict(vehicle_id, worker)
                return

    def _is_idle(self, vehicle_id: str, now: datetime) -> bool:
        state = self._store.find_by_vehicle(vehicle_id)
        if state is not None and not self._store.is_stale(state, now):
            return False
        if self._trails.is_idle(vehicle_id, now):
            return True
        # Unsaved points are given up once they are older than the retention window.
        points = self._trails.buffer(vehicle_id)
        return bool(points) and (now - points[-1].timestamp).total_seconds() > self._config.state_retention_s

    def _evict(self, vehicle_id: str, worker: _VehicleWorker) -> None:
        # Live state stays in the store until the retention window expires.
        if self._workers.get(vehicle_id) is worker:
            del self._workers[vehicle_id]
        self._filters.pop(vehicle_id, None)
        unsaved = len(self._trails.buffer(vehicle_id))
        if unsaved:
            _logger.info("Dropping %d unsaved trail point(s) of long silent vehicle %s", unsaved, vehicle_id)
        self._trails.discard(vehicle_id)
        _logger.debug("Released idle vehicle %s", vehicle_id)

    async def _handle(self, vehicle_id: str, event: _InboxEvent) -> None:
        if isinstance(event, _SampleArrived):
            self._apply_sample(vehicle_id, event.report, event.sample)
        elif isinstance(event, _TickFired):
            await self._apply_tick(vehicle_id, event)
        elif isinstance(event, _WentOffline):
            self._apply_offline(vehicle_id, event)
        elif isinstance(event, _ManualSave):
            await self._apply_manual_save(vehicle_id, event)

    def _apply_sample(self, vehicle_id: str, report: LocationReport, sample: LocationSample) -> None:
        state = VehicleState(
            vehicle_id=vehicle_id,
            driver_name=report.driver_name,
            license_plate=report.license_plate,
            company_id=report.company_id,
            position=LatLng(lat=sample.lat, lng=sample.lng),
            last_update=sample.captured_at,
            heading_degrees=sample.heading_degrees,
        )
        if self._store.upsert(state):
            self.stats.state_updates += 1
        else:
            self.stats.record_drop(DropReason.STALE_UPDATE)

        owner = SegmentOwner(
            vehicle_id=vehicle_id,
            driver_name=report.driver_name,
            license_plate=report.license_plate,
            company_id=report.company_id,
        )
        point = TrailPoint(lat=sample.lat, lng=sample.lng, timestamp=sample.captured_at)
        if self._trails.append(vehicle_id, point, owner=owner):
            self.stats.trail_points += 1

    def _apply_offline(self, vehicle_id: str, event: _WentOffline) -> None:
        base = self._store.find_by_vehicle(vehicle_id)
        report = event.report
        if base is None:
            if report is None or report.latitude is None or report.longitude is None:
                _logger.debug("Offline signal for unknown vehicle %s ignored", vehicle_id)
                return
            base = VehicleState(
                vehicle_id=vehicle_id,
                driver_name=report.driver_name,
                license_plate=report.license_plate,
                company_id=report.company_id,
                position=LatLng(lat=report.latitude, lng=report.longitude),
                last_update=event.at,
            )
        offline = base.model_copy(update={"explicit_offline": True, "last_update": event.at, "last_online": None})
        if self._store.upsert(offline):
            self.stats.state_updates += 1
            _logger.info("Vehicle %s reported itself offline", vehicle_id)
        else:
            self.stats.record_drop(DropReason.STALE_UPDATE)

    async def _apply_tick(self, vehicle_id: str, event: _TickFired) -> None:
        if event.future.cancelled():
            # Sweep was cancelled before reaching this vehicle: leave the buffer alone.
            return
        previous_points = self._trails.buffer(vehicle_id)
        previous_save = self._trails.last_auto_save_at(vehicle_id)
        discarded_before = self._trails.discarded

        segment = self._trails.tick(vehicle_id, event.now)
        if self._trails.discarded > discarded_before:
            self.stats.segments_discarded += 1
        if segment is None:
            if not event.future.done():
                event.future.set_result(None)
            return

        try:
            await self._persist(segment)
        except asyncio.CancelledError:
            committed = await self._was_committed(segment)
            if committed:
                self.stats.segments_persisted += 1
                if not event.future.done():
                    event.future.set_result(segment)
            else:
                if committed is None:
                    self._hold(segment)
                else:
                    self._trails.restore(vehicle_id, previous_points, previous_save)
                event.future.cancel()
            raise
        except FleetError:
            if not await self._was_committed(segment):
                # Not retried here; the caller decides via retry_failed().
                self.stats.persist_failures += 1
                self._hold(segment)
                _logger.warning(
                    "Auto-save of vehicle %s failed; segment %s held for retry", vehicle_id, segment.id, exc_info=True
                )
                if not event.future.done():
                    event.future.set_result(None)
                return

        self.stats.segments_persisted += 1
        if not event.future.done():
            event.future.set_result(segment)

    async def _apply_manual_save(self, vehicle_id: str, event: _ManualSave) -> None:
        previous_save = self._trails.last_auto_save_at(vehicle_id)
        try:
            segment = self._trails.manual_flush(vehicle_id, event.name, event.notes, now=event.now)
        except InsufficientDataError as exc:
            # Expected outcome for the caller, not a worker failure.
            if not event.future.done():
                event.future.set_exception(exc)
            return

        try:
            await self._persist(segment)
        except asyncio.CancelledError:
            committed = await self._was_committed(segment)
            if committed:
                self.stats.segments_persisted += 1
                if not event.future.done():
                    event.future.set_result(segment)
            else:
                self._abandon_manual_save(vehicle_id, segment, previous_save, committed)
                event.future.cancel()
            raise
        except FleetError as exc:
            committed = await self._was_committed(segment)
            if not committed:
                self._abandon_manual_save(vehicle_id, segment, previous_save, committed)
                if not event.future.done():
                    event.future.set_exception(exc)
                return

        self.stats.segments_persisted += 1
        if not event.future.done():
            event.future.set_result(segment)

    def _abandon_manual_save(
        self,
        vehicle_id: str,
        segment: RouteSegment,
        previous_save: datetime | None,
        committed: bool | None,
    ) -> None:
        if committed is None:
            # Points may be stored already; putting them back could save them twice.
            self.stats.persist_failures += 1
            self._hold(segment)
            _logger.warning("Manual save of vehicle %s unconfirmed; segment %s held for retry", vehicle_id, segment.id)
        else:
            self._trails.restore(vehicle_id, list(segment.points), previous_save)

    # ------------------------------------------------------------------
    # Periodic tick
    # ------------------------------------------------------------------

    async def _run_ticker(self) -> None:
        while True:
            await asyncio.sleep(self._config.tick_interval_s)
            try:
                await self.tick_all()
            except asyncio.CancelledError:
                raise
            except Exception:
                _logger.warning("Trail sweep failed", exc_info=True)

    async def tick_all(self, now: datetime | None = None) -> list[RouteSegment]:
        """Evaluate the auto-save rule for every known vehicle.

        Vehicles that are stale with nothing buffered release their worker
        after their tick; live state older than ``state_retention_s`` is
        dropped.  Returns the segments that were persisted during this sweep.
        """
        at = now or self._clock()
        loop = asyncio.get_running_loop()
        futures: list[asyncio.Future[RouteSegment | None]] = []
        for worker in list(self._workers.values()):
            future: asyncio.Future[RouteSegment | None] = loop.create_future()
            worker.inbox.put_nowait(_TickFired(now=at, future=future))
            futures.append(future)
        results = await asyncio.gather(*futures, return_exceptions=True)

        self._debouncer.expire(at)
        # Reporters that never had a sample accepted have no worker to release them.
        for vehicle_id in [v for v, f in self._filters.items() if f.last_accepted is None and v not in self._workers]:
            del self._filters[vehicle_id]
        self._store.prune(at - timedelta(seconds=self._config.state_retention_s))
        return [r for r in results if isinstance(r, RouteSegment)]

    @property
    def failed_segments(self) -> list[RouteSegment]:
        """Segments whose persist failed or could not be confirmed, oldest first."""
        return list(self._failed_segments)

    async def retry_failed(self) -> list[str]:
        """Try once more to persist every held segment.

        Segments that fail again stay held; ids of committed ones are
        returned.  Persisting is idempotent per segment id, so a held
        segment that had in fact been stored is simply confirmed.
        """
        committed: list[str] = []
        for segment in list(self._failed_segments):
            try:
                await self._persist(segment)
            except FleetError:
                if not await self._was_committed(segment):
                    _logger.warning("Retry of segment %s failed; still held", segment.id, exc_info=True)
                    continue
            self._failed_segments = [s for s in self._failed_segments if s.id != segment.id]
            self.stats.segments_persisted += 1
            committed.append(segment.id)
        return committed

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        """Current time on the service clock."""
        return self._clock()

    def get_live_fleet(self, company_id: str, now: datetime | None = None) -> FleetSnapshot:
        return self._store.classify(now or self._clock(), company_id)

    def vehicle_status(self, state: VehicleState, now: datetime | None = None) -> VehicleStatus:
        return self._store.status_of(state, now)

    def trail(self, vehicle_id: str) -> list[TrailPoint]:
        """Currently buffered (not yet persisted) points of a vehicle."""
        return self._trails.buffer(vehicle_id)

    async def get_route_history(
        self,
        company_id: str,
        vehicle_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
    ) -> list[RouteSegment]:
        repository = self._require_repository()
        route_filter = RouteFilter(vehicle_id=vehicle_id, start_date=start_date, end_date=end_date)
        result: list[RouteSegment] = await self._read(
            "query",
            repository.query(company_id, route_filter, limit or self._config.history_limit),
        )
        return result

    async def save_manual_route(self, vehicle_id: str, name: str | None = None, notes: str | None = None) -> RouteSegment:
        """Persist the vehicle's current buffer as a named route.

        Raises
        ------
        InsufficientDataError
            Fewer than two points are buffered.
        RepositoryUnavailableError
            The segment could not be stored.  The buffer is left intact,
            unless the write could not be confirmed either way; then the
            segment is held in :attr:`failed_segments` instead.
        ConflictDetectedError
            A different route is already stored under the segment id.
        """
        self._require_repository()
        worker = self._workers.get(vehicle_id)
        if worker is None:
            raise InsufficientDataError(f"vehicle {vehicle_id} has no buffered points", vehicle_id=vehicle_id)
        future: asyncio.Future[RouteSegment] = asyncio.get_running_loop().create_future()
        worker.inbox.put_nowait(_ManualSave(name=name, notes=notes, now=self._clock(), future=future))
        return await future

    async def find_duplicate_routes(
        self,
        company_id: str,
        *,
        key: Callable[[RouteSegment], Hashable | None] = route_natural_key,
        auto_fix: bool = False,
    ) -> DuplicateReport:
        report: DuplicateReport = await self._read(
            "find_duplicate_keys",
            resolve_duplicates(self._require_repository(), company_id, key=key, auto_fix=auto_fix),
        )
        return report

    # ------------------------------------------------------------------
    # MQTT feed
    # ------------------------------------------------------------------

    def _start_mqtt(self) -> None:
        """Best-effort MQTT startup (failures must not break the HTTP path)."""
        if not self._config.mqtt_enabled or self._loop is None:
            return
        if self._mqtt_runtime is not None and self._mqtt_runtime.is_running:
            return
        try:
            runtime = FleetMqttRuntime(loop=self._loop, on_payload=self._on_mqtt_payload, logger=_logger)
            runtime.start(self._config.mqtt)
            self._mqtt_runtime = runtime
        except Exception:
            _logger.warning("MQTT startup failed", exc_info=True)

    def _stop_mqtt(self) -> None:
        runtime = self._mqtt_runtime
        self._mqtt_runtime = None
        if runtime is not None:
            runtime.stop()

    def _on_mqtt_payload(self, payload: dict[str, Any]) -> None:
        """Handle a parsed MQTT message (called on the loop via call_soon_threadsafe)."""
        self.submit_payload(payload)
