"""
Trigger gateway.

Receives signed push notifications from the repository host, filters them to
the deployment branch, and hands the pushed revision to the dispatcher. The
response goes out as soon as the run is dispatched; run progress is available
from the /runs endpoints.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from slowapi.errors import RateLimitExceeded

from push_deployer import __version__
from push_deployer.config.settings import DeployerConfig
from push_deployer.exceptions import InputError, RunInProgressError
from push_deployer.gateway.dispatcher import Dispatcher
from push_deployer.gateway.rate_limit import create_limiter, rate_limit_exceeded_handler
from push_deployer.gateway.signature import SIGNATURE_HEADER, signature_matches
from push_deployer.locking import WorkloadLocks
from push_deployer.logging_config import GATEWAY_LOGGER
from push_deployer.models import PushEvent, Revision
from push_deployer.run_history import RunHistory
from push_deployer.utils.log_sanitizer import sanitize_for_log, sanitize_ref

logger = logging.getLogger(__name__)
access_logger = logging.getLogger(GATEWAY_LOGGER)


def build_dispatcher(config: DeployerConfig) -> Dispatcher:
    """Dispatcher backed by run history and locks in the configured state dir."""
    state_dir = config.paths.resolve_state_dir()
    history = RunHistory(state_dir, max_runs=config.gateway.history_size)
    history.load()
    return Dispatcher(config, history, WorkloadLocks(state_dir))


def create_app(config: DeployerConfig, dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    """
    Create the gateway application.

    Args:
        config: Deployer configuration; must carry a webhook secret
        dispatcher: Run dispatcher (built from config if omitted)

    Returns:
        FastAPI application

    Raises:
        InputError: If no webhook secret is configured
    """
    secret = config.require_webhook_secret()
    gateway = config.gateway
    branch = config.workload.branch

    if dispatcher is None:
        dispatcher = build_dispatcher(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            f"Trigger gateway listening for pushes to '{branch}' on {gateway.webhook_path}"
        )
        yield
        await dispatcher.shutdown()

    app = FastAPI(title="push-deployer gateway", version=__version__, lifespan=lifespan)

    limiter = create_limiter(gateway)
    app.state.limiter = limiter
    app.state.config = config
    app.state.dispatcher = dispatcher
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore

    @app.post(gateway.webhook_path, status_code=202)
    @limiter.limit(gateway.rate_limit)
    async def receive_push(request: Request) -> Any:
        """Verify, filter and dispatch one push notification."""
        body = await request.body()
        client = request.client.host if request.client else "unknown"

        signature = request.headers.get(SIGNATURE_HEADER)
        if not signature:
            access_logger.warning(f"Rejected push from {client}: no signature")
            raise HTTPException(status_code=401, detail="Signature required")
        if not signature_matches(secret, body, signature):
            access_logger.warning(f"Rejected push from {client}: invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Payload is not valid JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Payload must be a JSON object")

        try:
            event = PushEvent.model_validate(payload)
        except ValidationError:
            raise HTTPException(status_code=400, detail="Malformed push payload")

        if event.branch != branch:
            access_logger.info(
                f"Ignoring push to {sanitize_ref(event.ref) or '<none>'} from {client}"
            )
            return JSONResponse(
                status_code=200,
                content={"status": "ignored", "reason": f"not a push to {branch}"},
            )

        if not event.after or event.is_branch_deletion:
            raise HTTPException(status_code=400, detail="Push payload has no revision")

        try:
            revision = Revision.parse(event.after)
        except InputError as e:
            access_logger.warning(
                f"Rejected push from {client}: bad revision {sanitize_for_log(event.after, 50)}"
            )
            raise HTTPException(status_code=400, detail=e.message)

        try:
            run = await dispatcher.submit(revision, branch)
        except RunInProgressError as e:
            access_logger.info(f"Rejected push of {revision.short} from {client}: busy")
            raise HTTPException(status_code=409, detail=e.message)

        access_logger.info(
            f"Accepted push of {revision.short} to {branch} from {client} (run {run.run_id})"
        )
        return {"status": "accepted", "run_id": run.run_id, "revision": revision.short}

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "workload": config.workload.name,
            "active_runs": dispatcher.active_runs,
        }

    @app.get("/runs")
    async def list_runs(limit: int = Query(20, ge=1, le=1000)) -> Dict[str, Any]:
        """Most recent runs, newest first."""
        runs = dispatcher.history.recent(limit)
        return {"runs": [run.model_dump(mode="json") for run in runs]}

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str) -> Dict[str, Any]:
        run = dispatcher.history.get(run_id)
        if run is None:
            raise HTTPException(
                status_code=404, detail=f"Run {sanitize_for_log(run_id, 40)} not found"
            )
        return run.model_dump(mode="json")

    return app
