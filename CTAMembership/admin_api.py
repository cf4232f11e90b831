"""
Administrative HTTP surface (aiohttp.web), served inside the bot's event loop.

  POST /run-expiry-check      -> run_expiry_check() result
  POST /run-expiry-reminder   -> run_expiry_reminder() result
  POST /mod/remove            -> {user_id, reason} role removal

Every route requires the shared secret in the X-API-Key header.
"""

from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

from CTAMembership.audit_log import AuditLog
from CTAMembership.models import RevokeResult

log = logging.getLogger("cta-membership")

API_KEY_HEADER = "X-API-Key"

JobRunner = Callable[[], Awaitable[Dict[str, Any]]]
Revoker = Callable[[str, str, str], Awaitable[RevokeResult]]


def _authorized(request: web.Request, api_secret: str) -> bool:
    supplied = request.headers.get(API_KEY_HEADER) or ""
    if not api_secret or not supplied:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), api_secret.encode("utf-8"))


def build_admin_app(
    *,
    api_secret: str,
    run_expiry_check: JobRunner,
    run_expiry_reminder: JobRunner,
    revoke: Revoker,
    audit: AuditLog,
) -> web.Application:
    @web.middleware
    async def auth_middleware(request: web.Request, handler):
        if not _authorized(request, api_secret):
            audit.warning("Admin API unauthorized request", path=request.path, remote=request.remote)
            return web.json_response({"success": False, "error": "Unauthorized"}, status=403)
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            audit.error(f"Error in {request.path} endpoint", error=str(e))
            return web.json_response({"success": False, "error": str(e)}, status=500)

    async def handle_expiry_check(request: web.Request) -> web.Response:
        audit.info("Expiry check triggered via admin API")
        return web.json_response(await run_expiry_check())

    async def handle_expiry_reminder(request: web.Request) -> web.Response:
        audit.info("Expiry reminder triggered via admin API")
        return web.json_response(await run_expiry_reminder())

    async def handle_mod_remove(request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except json.JSONDecodeError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        user_id = str(data.get("user_id") or "").strip()
        if not user_id:
            return web.json_response({"success": False, "error": "user_id is required"}, status=400)
        reason = str(data.get("reason") or "Removed via API")
        result = await revoke(user_id, reason, "API")
        return web.json_response(result.to_dict())

    app = web.Application(middlewares=[auth_middleware])
    app.router.add_post("/run-expiry-check", handle_expiry_check)
    app.router.add_post("/run-expiry-reminder", handle_expiry_reminder)
    app.router.add_post("/mod/remove", handle_mod_remove)
    return app


async def start_admin_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Start serving `app`; the caller keeps the runner for cleanup."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info(f"Admin HTTP server started on {host}:{port}")
    return runner


async def stop_admin_server(runner: Optional[web.AppRunner]) -> None:
    if runner is not None:
        await runner.cleanup()
