import hmac
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, Optional

from aiohttp import web

from feedin_controller.config import AppConfig
from feedin_controller.controller.models import TickResult

log = logging.getLogger(__name__)

HISTORY_LENGTH = 50


# --------------------------------------------------------------------
# Shared state (written by the control loop, read by the status routes)
# --------------------------------------------------------------------
STATUS: Dict[str, Any] = {
    "grid_power_w": None,
    "feeding_in": False,
    "aggregate_limit_w": None,
    "control_active": False,
    "inverter_limits_w": {},
    "last_outcome": None,
    "cooldown_remaining_ms": 0.0,
    "last_update": 0.0,
}

HISTORY: Dict[str, Deque[Any]] = {
    "grid_power_w": deque(maxlen=HISTORY_LENGTH),
    "aggregate_limit_w": deque(maxlen=HISTORY_LENGTH),
    "control_active": deque(maxlen=HISTORY_LENGTH),
}


def update_status(result: TickResult, now: Optional[float] = None) -> None:
    """Reflect one control tick in STATUS and HISTORY."""
    if result.grid_power_w is not None:
        STATUS["grid_power_w"] = result.grid_power_w
        STATUS["feeding_in"] = result.grid_power_w < 0

    # Aborted ticks leave the previous control state untouched
    if result.control_active is not None:
        STATUS["control_active"] = result.control_active
    if result.aggregate_limit_w is not None:
        STATUS["aggregate_limit_w"] = result.aggregate_limit_w

    limits = dict(STATUS["inverter_limits_w"])
    limits.update(result.applied_w)
    STATUS["inverter_limits_w"] = limits

    STATUS["last_outcome"] = result.outcome.value
    STATUS["cooldown_remaining_ms"] = result.cooldown_remaining_ms
    STATUS["last_update"] = time.time() if now is None else now

    for key in HISTORY:
        HISTORY[key].append(STATUS[key])


# --------------------------------------------------------------------
# Auth
# --------------------------------------------------------------------
def _extract_bearer_token(auth_header: str) -> Optional[str]:
    """Parse 'Authorization: Bearer <token>'."""
    if not auth_header:
        return None
    parts = auth_header.split(None, 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].lower(), parts[1].strip()
    if scheme != "bearer" or not token:
        return None
    return token


@web.middleware
async def auth_middleware(request: web.Request, handler):
    cfg: AppConfig = request.app["config"]
    if cfg.api_token and request.path != "/health":
        presented = _extract_bearer_token(request.headers.get("Authorization", ""))
        if presented is None or not hmac.compare_digest(presented, cfg.api_token):
            return web.json_response({"error": "unauthorized"}, status=401)
    return await handler(request)


# --------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------
async def handle_heartbeat(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "message": "Feed-in controller is alive"})


async def handle_status_json(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "status": dict(STATUS),
            "history": {k: list(v) for k, v in HISTORY.items()},
        }
    )


def create_app(config: AppConfig) -> web.Application:
    app = web.Application(middlewares=[auth_middleware])
    app["config"] = config
    app.router.add_get("/health", handle_heartbeat)
    app.router.add_get("/status/json", handle_status_json)
    return app


# --------------------------------------------------------------------
# Start server
# --------------------------------------------------------------------
async def start_server(config: AppConfig) -> web.AppRunner:
    runner = web.AppRunner(create_app(config))
    await runner.setup()

    site = web.TCPSite(runner, host=config.api_host, port=config.api_port)
    await site.start()

    log.info("Status server running on http://%s:%d", config.api_host, config.api_port)
    return runner
