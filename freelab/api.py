"""HTTP surface for the step engine (FastAPI).

The route parses the body as a plain JSON object and leaves all validation to
the orchestrator, so every rejection uses the same error envelope.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse

from .orchestrator import StepOrchestrator


def create_app(orchestrator: StepOrchestrator) -> FastAPI:
    """Build the FastAPI application around an orchestrator."""
    app = FastAPI(title="freelab", version="0.1.0")
    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/free/step")
    async def free_step(request: Request, payload: Any = Body(default=None)) -> JSONResponse:
        status, body = await app.state.orchestrator.handle(request, payload)
        return JSONResponse(status_code=status, content=body)

    return app


__all__ = ["create_app"]
