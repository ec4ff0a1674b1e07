"""HTTP adapter exposing health probes, webhook ingress and the admin control surface."""

import json
import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from aiohttp import web, web_request
from aiohttp.web_response import Response

from .exceptions import BufferConfigurationError, StoreUnavailableError, UpstreamError
from .record_cache import RegistrationFilters


logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str)


def _int_param(request: web_request.Request, name: str, default: Optional[int] = None) -> Optional[int]:
    value = request.query.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": f"{name} must be an integer"}),
            content_type="application/json"
        )


async def _read_json(request: web_request.Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": "Body must be valid JSON"}),
            content_type="application/json"
        )


class HealthCheckHandler:
    """Health check HTTP handler."""

    def __init__(self, service):
        self.service = service

    async def health(self, request: web_request.Request) -> Response:
        try:
            health_data = await self.service.health_check()
            status = 200 if health_data["status"] == "healthy" else 503
            return web.json_response(health_data, status=status, dumps=_dumps)
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    "service": self.service.settings.service_name,
                    "status": "unhealthy",
                    "error": str(e),
                    "timestamp": _now_iso()
                },
                status=503
            )

    async def ready(self, request: web_request.Request) -> Response:
        """Readiness probe; degraded still serves cached reads."""
        try:
            health_data = await self.service.health_check()
            is_ready = health_data["status"] in ["healthy", "degraded"]
            return web.json_response(
                {
                    "ready": is_ready,
                    "status": health_data["status"],
                    "timestamp": _now_iso()
                },
                status=200 if is_ready else 503
            )
        except Exception as e:
            logger.error(f"Readiness check failed: {e}", exc_info=True)
            return web.json_response(
                {"ready": False, "error": str(e), "timestamp": _now_iso()},
                status=503
            )

    async def live(self, request: web_request.Request) -> Response:
        return web.json_response({"alive": True, "timestamp": _now_iso()}, status=200)


class ApiHandler:
    """Webhook ingress, registration reads/writes and admin endpoints."""

    def __init__(self, service):
        self.service = service

    # ==================== Webhook ====================

    async def upstream_webhook(self, request: web_request.Request) -> Response:
        """Accepts JSON bodies as well as form/query deliveries."""
        message: Any
        if request.content_type == "application/json":
            raw = await request.text()
            try:
                message = json.loads(raw) if raw else {}
            except ValueError:
                message = raw
        else:
            form = await request.post()
            message = {**dict(request.query), **dict(form)}

        result = await self.service.webhook.ingest(message)
        return web.json_response(result.body, status=result.status_code, dumps=_dumps)

    # ==================== Registrations ====================

    async def event_registrations(self, request: web_request.Request) -> Response:
        event_id = request.match_info["event_id"]
        filters = RegistrationFilters(
            status=request.query.get("status"),
            group_only=request.query.get("group_only", False),
            limit=_int_param(request, "limit"),
            offset=_int_param(request, "offset", 0)
        )

        page = await self.service.get_event_registrations(event_id, filters)
        return web.json_response({
            "success": True,
            "event_id": event_id,
            "data": [r.to_dict() for r in page.data],
            "total": page.total,
            "count": page.count,
            "cached": page.cached,
            "source": page.source
        }, dumps=_dumps)

    async def create_registration(self, request: web_request.Request) -> Response:
        payload = await _read_json(request)
        if not isinstance(payload, dict):
            return web.json_response({"success": False, "message": "Body must be an object"}, status=400)

        result = await self.service.submitter.submit(payload)
        status = {"created": 201, "queued": 202}.get(result.status, 422)
        return web.json_response({"success": result.success, **asdict(result)}, status=status, dumps=_dumps)

    # ==================== Sync admin ====================

    async def sync_status(self, request: web_request.Request) -> Response:
        return web.json_response({
            "success": True,
            "status": self.service.sync_worker.get_status(),
            "metadata": await self.service.sync_worker.get_sync_metadata()
        }, dumps=_dumps)

    async def sync_start(self, request: web_request.Request) -> Response:
        if self.service.sync_worker.is_running:
            return web.json_response({"success": False, "message": "Sync worker is already running"}, status=409)
        self.service.start_sync_worker()
        return web.json_response({"success": True, "message": "Sync worker starting"}, status=202)

    async def sync_stop(self, request: web_request.Request) -> Response:
        if not self.service.sync_worker.is_running:
            return web.json_response({"success": False, "message": "Sync worker is not running"}, status=409)
        await self.service.sync_worker.stop()
        return web.json_response({"success": True, "message": "Sync worker stopped"})

    async def full_sync(self, request: web_request.Request) -> Response:
        report = await self.service.sync_worker.perform_full_sync()
        return web.json_response({"success": True, **asdict(report)}, dumps=_dumps)

    async def incremental_sync(self, request: web_request.Request) -> Response:
        report = await self.service.sync_worker.perform_incremental_sync()
        return web.json_response({"success": True, **asdict(report)}, dumps=_dumps)

    async def force_sync(self, request: web_request.Request) -> Response:
        result = await self.service.sync_worker.force_sync_event(request.match_info["event_id"])
        return web.json_response(asdict(result), status=200 if result.success else 502, dumps=_dumps)

    async def discrepancy_check(self, request: web_request.Request) -> Response:
        report = await self.service.sync_worker.detect_discrepancies()
        return web.json_response({"success": True, **asdict(report)}, dumps=_dumps)

    # ==================== Buffer admin ====================

    async def buffer_status(self, request: web_request.Request) -> Response:
        return web.json_response({
            "success": True,
            "queue": await self.service.buffer.status(),
            "scheduler": self.service.buffer_scheduler.get_status()
        }, dumps=_dumps)

    async def buffer_submissions(self, request: web_request.Request) -> Response:
        items = await self.service.buffer.list_by_status(request.query.get("status"))
        return web.json_response({
            "success": True,
            "count": len(items),
            "data": [i.to_dict() for i in items]
        }, dumps=_dumps)

    async def buffer_submission(self, request: web_request.Request) -> Response:
        item = await self.service.buffer.get_item(request.match_info["item_id"])
        if item is None:
            return web.json_response({"success": False, "message": "Submission not found"}, status=404)
        return web.json_response({"success": True, "data": item.to_dict()}, dumps=_dumps)

    async def buffer_retry_one(self, request: web_request.Request) -> Response:
        item_id = request.match_info["item_id"]
        try:
            result = await self.service.buffer.retry_one(item_id, self.service.submitter.submit_direct)
        except BufferConfigurationError as e:
            return web.json_response({"success": False, "message": str(e)}, status=503)

        if result is None:
            return web.json_response({"success": False, "message": "Submission not found"}, status=404)

        return web.json_response({
            "success": result.outcome == "completed",
            "outcome": result.outcome,
            "error": result.error,
            "data": result.item.to_dict() if result.item else None
        }, status=409 if result.outcome == "skipped" else 200, dumps=_dumps)

    async def buffer_retry(self, request: web_request.Request) -> Response:
        try:
            counts = await self.service.buffer_scheduler.run_retry_sweep()
        except BufferConfigurationError as e:
            return web.json_response({"success": False, "message": str(e)}, status=503)
        return web.json_response({"success": True, "results": counts})

    async def buffer_cleanup(self, request: web_request.Request) -> Response:
        days = _int_param(request, "older_than_days")
        older_than = timedelta(days=days) if days is not None else None
        cleaned = await self.service.buffer.cleanup_completed(older_than)
        return web.json_response({"success": True, "cleaned": cleaned})

    # ==================== Cache admin ====================

    async def cache_stats(self, request: web_request.Request) -> Response:
        stats = await self.service.cache.get_cache_stats()
        return web.json_response({"success": True, **asdict(stats)}, dumps=_dumps)


@web.middleware
async def error_middleware(request: web_request.Request, handler):
    """Map service errors to HTTP responses; 5xx makes the upstream re-deliver webhooks."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable handling {request.path}: {e}")
        return web.json_response({"success": False, "message": "Store unavailable", "error": str(e)}, status=500)
    except UpstreamError as e:
        logger.error(f"Upstream error handling {request.path}: {e}")
        return web.json_response({"success": False, "message": "Upstream error", "error": str(e)}, status=502)
    except Exception as e:
        logger.error(f"Unhandled error on {request.path}: {e}", exc_info=True)
        return web.json_response({"success": False, "message": "Internal server error", "error": str(e)}, status=500)


def create_app(service) -> web.Application:
    app = web.Application(middlewares=[error_middleware])

    health = HealthCheckHandler(service)
    app.router.add_get('/health', health.health)
    app.router.add_get('/ready', health.ready)
    app.router.add_get('/live', health.live)

    api = ApiHandler(service)
    app.router.add_post('/webhooks/upstream-sync', api.upstream_webhook)
    app.router.add_get('/events/{event_id}/registrations', api.event_registrations)
    app.router.add_post('/registrations', api.create_registration)

    app.router.add_get('/admin/sync/status', api.sync_status)
    app.router.add_post('/admin/sync/start', api.sync_start)
    app.router.add_post('/admin/sync/stop', api.sync_stop)
    app.router.add_post('/admin/sync/full-sync', api.full_sync)
    app.router.add_post('/admin/sync/incremental-sync', api.incremental_sync)
    app.router.add_post('/admin/sync/force-sync/{event_id}', api.force_sync)
    app.router.add_get('/admin/sync/discrepancy-check', api.discrepancy_check)

    app.router.add_get('/admin/buffer/status', api.buffer_status)
    app.router.add_get('/admin/buffer/submissions', api.buffer_submissions)
    app.router.add_get('/admin/buffer/submissions/{item_id}', api.buffer_submission)
    app.router.add_post('/admin/buffer/submissions/{item_id}/retry', api.buffer_retry_one)
    app.router.add_post('/admin/buffer/retry', api.buffer_retry)
    app.router.add_post('/admin/buffer/cleanup', api.buffer_cleanup)

    app.router.add_get('/admin/cache/stats', api.cache_stats)

    return app


class RegistrationSyncServer:
    """HTTP server for the service."""

    def __init__(self, service, host: str = "0.0.0.0", port: int = 8080):
        self.service = service
        self.host = host
        self.port = port
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start(self):
        logger.info(f"Starting HTTP server on {self.host}:{self.port}")

        self.app = create_app(self.service)
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"HTTP server started on http://{self.host}:{self.port}")

    async def stop(self):
        logger.info("Stopping HTTP server")

        if self.site:
            await self.site.stop()

        if self.runner:
            await self.runner.cleanup()

        logger.info("HTTP server stopped")
