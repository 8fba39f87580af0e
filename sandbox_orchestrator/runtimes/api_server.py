from __future__ import annotations

import asyncio
import logging
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from sandbox_orchestrator.diagnostics import DiagnosticsProbe
from sandbox_orchestrator.errors import (
    BootstrapError,
    ProvisioningError,
    SandboxExpiredError,
    WriteError,
)
from sandbox_orchestrator.session_sandbox_manager import SandboxManager

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

logger = logging.getLogger(__name__)


class CreateSandboxRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    bootstrap: bool = True


def create_app(manager: SandboxManager | None = None) -> FastAPI:
    app = FastAPI()
    state: dict[str, Any] = {}
    if manager is not None:
        state["manager"] = manager

    def _manager() -> SandboxManager:
        # Built on first use so importing this module never needs cluster config.
        if "manager" not in state:
            state["manager"] = SandboxManager()
        return state["manager"]

    def _diagnostics() -> DiagnosticsProbe:
        # Built once per app; its HTTP connection pool is reused, then closed on shutdown.
        if "diagnostics" not in state:
            state["diagnostics"] = DiagnosticsProbe(_manager())
        return state["diagnostics"]

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/check-vite-status")
    async def check_vite_status() -> JSONResponse:
        report = await asyncio.to_thread(_diagnostics().check)
        return JSONResponse(report.to_payload(), status_code=200)

    @app.get("/api/debug-sandbox")
    async def debug_sandbox() -> JSONResponse:
        return JSONResponse(_diagnostics().snapshot(), status_code=200)

    @app.post("/api/sandboxes")
    async def create_sandbox(body: CreateSandboxRequest | None = None) -> JSONResponse:
        req = body or CreateSandboxRequest()
        mgr = _manager()
        try:
            entry = await asyncio.to_thread(mgr.create_session, req.session_id)
        except ProvisioningError as e:
            logger.error("Sandbox provisioning failed: %s", e)
            return JSONResponse({"error": str(e)}, status_code=502)

        if req.bootstrap:
            try:
                await asyncio.to_thread(entry.provider.dev_server.bootstrap)
            except BootstrapError as e:
                return JSONResponse(
                    {
                        "error": str(e),
                        "step": e.step,
                        "sessionId": entry.session_id,
                    },
                    status_code=500,
                )
            except SandboxExpiredError as e:
                logger.warning(
                    "Sandbox for session '%s' expired during bootstrap", entry.session_id
                )
                return JSONResponse(
                    {"error": str(e), "sessionId": entry.session_id},
                    status_code=410,
                )
            except WriteError as e:
                logger.error(
                    "Scaffold write failed for session '%s': %s", entry.session_id, e
                )
                return JSONResponse(
                    {
                        "error": str(e),
                        "step": "write scaffold",
                        "path": e.path,
                        "sessionId": entry.session_id,
                    },
                    status_code=500,
                )

        info = entry.provider.get_sandbox_info()
        return JSONResponse(
            {
                "sessionId": entry.session_id,
                "sandboxId": info.sandbox_id if info else None,
                "url": info.url if info else None,
                "provider": info.provider if info else None,
                "devServerState": entry.provider.dev_server.state.value,
            },
            status_code=201,
        )

    @app.delete("/api/sandboxes/{session_id}")
    async def delete_sandbox(session_id: str) -> JSONResponse:
        released = await asyncio.to_thread(_manager().release_provider, session_id)
        if not released:
            return JSONResponse({"error": "not_found"}, status_code=404)
        return JSONResponse({"sessionId": session_id, "released": True}, status_code=200)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        diagnostics = state.pop("diagnostics", None)
        if diagnostics is not None:
            diagnostics.close()
        mgr = state.get("manager")
        if mgr is not None:
            await asyncio.to_thread(mgr.close)

    return app


app = create_app()
