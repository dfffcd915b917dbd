"""
HTTP surface, served by uvicorn.

    GET /api/events/pam/generic?username=&type=&service=   200 ok / 400 failed
    GET /health                                           daemon state + config generation

The lifespan starts the service (config, accounts, sshd) and stops sshd on shutdown;
a failed start propagates so uvicorn exits instead of serving a half-started service.
"""

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from sftpmatic import __version__


def _sighup_handler(service, pending: set):
    """Signal callback that schedules service.reload(); running reloads are kept in pending."""
    async def reload():
        try:
            await service.reload()
        except Exception as e:
            logging.error("Reload after SIGHUP failed: %s", e)

    def handler():
        logging.info("SIGHUP received; reloading configuration")
        task = asyncio.ensure_future(reload())
        pending.add(task)
        task.add_done_callback(pending.discard)

    return handler


def _reload_on_sighup(service, pending: set):
    asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, _sighup_handler(service, pending))


def create_app(service, handle_sighup: bool = False) -> FastAPI:
    """Build the FastAPI app around a started-on-lifespan service."""
    reloads: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        if handle_sighup:
            _reload_on_sighup(service, reloads)
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title="SFTPmatic", version=__version__, lifespan=lifespan)

    @app.get("/api/events/pam/generic")
    async def pam_generic_event(username: Optional[str] = None,
                                type: Optional[str] = None,
                                pam_service: Optional[str] = Query(None, alias="service")):
        ok = await service.handle_pam_event(username, type, pam_service)
        if ok:
            return JSONResponse({"status": "ok"})
        return JSONResponse({"status": "failed"}, status_code=400)

    @app.get("/health")
    def health():
        return JSONResponse(service.health())

    return app
