"""aiohttp web adapter for the ingestion service.

Routes
------
``POST /locations``
    Submit one report (or a list of reports).
``POST /vehicles/{vehicle_id}/offline``
    Explicit "went offline" signal.
``POST /vehicles/{vehicle_id}/routes``
    Save the vehicle's current trail as a named route.
``GET /companies/{company_id}/fleet``
    Live fleet (active/stale) with per-vehicle status.
``GET /companies/{company_id}/routes``
    Route history, filterable by ``vehicleId``, ``startDate``, ``endDate``
    and ``limit``.
``GET /companies/{company_id}/routes/duplicates``
    Duplicate route report; ``autoFix=true`` removes extras.
``GET /stats``
    Ingestion counters.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from aiohttp import web

from pyfleet.exceptions import ConflictDetectedError, InsufficientDataError, RepositoryUnavailableError
from pyfleet.ingestion.normalize import parse_timestamp
from pyfleet.models.vehicle import VehicleState
from pyfleet.service import IngestionService, SubmitResult

_logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", IngestionService)


def _service(request: web.Request) -> IngestionService:
    return request.app[SERVICE_KEY]


def _result_json(result: SubmitResult) -> dict[str, Any]:
    return {"accepted": result.accepted, "reason": str(result.reason) if result.reason else None}


def _query_datetime(request: web.Request, name: str) -> datetime | None:
    value = request.query.get(name)
    if not value:
        return None
    try:
        parsed = parse_timestamp(value)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"invalid {name}: {value!r}") from exc
    if parsed is None:
        raise web.HTTPBadRequest(text=f"invalid {name}: {value!r}")
    return parsed


def _state_json(service: IngestionService, state: VehicleState, now: datetime) -> dict[str, Any]:
    data = state.model_dump(mode="json", by_alias=True)
    data["status"] = str(service.vehicle_status(state, now))
    return data


def _unavailable(request: web.Request, exc: RepositoryUnavailableError) -> web.Response:
    _logger.warning("%s %s: route history unavailable (%s)", request.method, request.path, exc)
    return web.json_response({"error": "repository_unavailable", "message": str(exc)}, status=503)


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError as exc:
        raise web.HTTPBadRequest(text="request body is not valid JSON") from exc


async def post_location(request: web.Request) -> web.Response:
    service = _service(request)
    body = await _read_json(request)
    if isinstance(body, list):
        results = [service.submit_payload(item) if isinstance(item, dict) else None for item in body]
        payload = [_result_json(r) if r is not None else {"accepted": False, "reason": "malformed"} for r in results]
        return web.json_response(payload, status=202)
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="expected a JSON object or array")
    return web.json_response(_result_json(service.submit_payload(body)), status=202)


async def post_offline(request: web.Request) -> web.Response:
    _service(request).mark_offline(request.match_info["vehicle_id"])
    return web.json_response({"accepted": True}, status=202)


async def post_manual_route(request: web.Request) -> web.Response:
    service = _service(request)
    body: Any = {}
    if request.can_read_body:
        body = await _read_json(request)
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="expected a JSON object")
    try:
        segment = await service.save_manual_route(
            request.match_info["vehicle_id"],
            name=body.get("name"),
            notes=body.get("notes"),
        )
    except InsufficientDataError as exc:
        return web.json_response({"error": "insufficient_data", "message": str(exc)}, status=422)
    except ConflictDetectedError as exc:
        return web.json_response({"error": "conflict", "message": str(exc)}, status=409)
    except RepositoryUnavailableError as exc:
        return _unavailable(request, exc)
    return web.json_response(segment.model_dump(mode="json", by_alias=True), status=201)


async def get_fleet(request: web.Request) -> web.Response:
    service = _service(request)
    now = service.now()
    snapshot = service.get_live_fleet(request.match_info["company_id"], now)
    return web.json_response(
        {
            "active": [_state_json(service, s, now) for s in snapshot.active],
            "stale": [_state_json(service, s, now) for s in snapshot.stale],
        }
    )


async def get_routes(request: web.Request) -> web.Response:
    service = _service(request)
    limit_text = request.query.get("limit")
    try:
        limit = int(limit_text) if limit_text else None
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"invalid limit: {limit_text!r}") from exc
    if limit is not None and limit <= 0:
        raise web.HTTPBadRequest(text="limit must be positive")
    try:
        segments = await service.get_route_history(
            request.match_info["company_id"],
            vehicle_id=request.query.get("vehicleId") or None,
            start_date=_query_datetime(request, "startDate"),
            end_date=_query_datetime(request, "endDate"),
            limit=limit,
        )
    except RepositoryUnavailableError as exc:
        return _unavailable(request, exc)
    return web.json_response([s.model_dump(mode="json", by_alias=True) for s in segments])


async def get_duplicates(request: web.Request) -> web.Response:
    service = _service(request)
    auto_fix = request.query.get("autoFix", "").lower() in {"1", "true", "yes"}
    try:
        report = await service.find_duplicate_routes(request.match_info["company_id"], auto_fix=auto_fix)
    except RepositoryUnavailableError as exc:
        return _unavailable(request, exc)
    groups = [
        {
            "key": [v.isoformat() if isinstance(v, datetime) else v for v in key] if isinstance(key, tuple) else key,
            "routes": [s.model_dump(mode="json", by_alias=True) for s in members],
        }
        for key, members in report.conflicts.items()
    ]
    return web.json_response({"duplicates": groups, "removedIds": report.removed_ids})


async def get_stats(request: web.Request) -> web.Response:
    return web.json_response(_service(request).stats.as_dict())


def create_app(service: IngestionService) -> web.Application:
    """Build the web application around an already started service."""
    app = web.Application()
    app[SERVICE_KEY] = service
    app.add_routes(
        [
            web.post("/locations", post_location),
            web.post("/vehicles/{vehicle_id}/offline", post_offline),
            web.post("/vehicles/{vehicle_id}/routes", post_manual_route),
            web.get("/companies/{company_id}/fleet", get_fleet),
            web.get("/companies/{company_id}/routes", get_routes),
            web.get("/companies/{company_id}/routes/duplicates", get_duplicates),
            web.get("/stats", get_stats),
        ]
    )
    return app
