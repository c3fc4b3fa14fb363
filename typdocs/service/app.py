"""FastAPI application entrypoint for typdocs service mode."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..config import ConfigError
from ..models import DEFAULT_FAIL_ON
from ..orchestrator import BuildResult, Orchestrator
from ..serialize import report_to_dict


class BuildRequest(BaseModel):
    path: str
    output_dir: Optional[str] = None


class DiagnosticModel(BaseModel):
    kind: str
    location: str
    source: str
    line: Optional[int] = None
    message: str


class BuildResponse(BaseModel):
    status: str
    exit_code: int
    aborted: bool
    pages: int
    counts: Dict[str, int]
    diagnostics: List[DiagnosticModel]


class HealthResponse(BaseModel):
    status: str
    version: str


def _default_orchestrator() -> Orchestrator:
    return Orchestrator()


def create_app(
    orchestrator_factory: Callable[[], Orchestrator] = _default_orchestrator,
) -> FastAPI:
    """Create the FastAPI application exposing typdocs builds."""

    app = FastAPI(title="typdocs service", version=__version__)

    async def get_orchestrator() -> Orchestrator:
        return orchestrator_factory()

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", version=__version__)

    @app.post("/build", response_model=BuildResponse)
    async def build_docs(
        payload: BuildRequest,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ) -> BuildResponse:
        def _run_build() -> BuildResult:
            return orchestrator.build(payload.path, payload.output_dir)

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, _run_build)
        return _build_response(result)

    @app.exception_handler(FileNotFoundError)
    async def file_not_found_handler(
        _: Any, exc: FileNotFoundError
    ) -> JSONResponse:  # pragma: no cover - simple mapping
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConfigError)
    async def config_error_handler(_: Any, exc: ConfigError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RuntimeError)
    async def runtime_error_handler(
        _: Any, exc: RuntimeError
    ) -> JSONResponse:  # pragma: no cover - simple mapping
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app


def _build_response(result: BuildResult) -> BuildResponse:
    fail_on = result.config.fail_on if result.config is not None else DEFAULT_FAIL_ON
    report = report_to_dict(result.report, fail_on)
    return BuildResponse(
        status="failed" if result.exit_code else "ok",
        exit_code=result.exit_code,
        aborted=report["aborted"],
        pages=result.page_count,
        counts=report["counts"],
        diagnostics=[DiagnosticModel(**item) for item in report["diagnostics"]],
    )


def run_service(
    host: str = "127.0.0.1", port: int = 8000
) -> None:  # pragma: no cover - integration path
    try:
        import uvicorn
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "uvicorn is required to run the service. Install it with `pip install uvicorn`."
        ) from exc

    app = create_app()
    uvicorn.run(app, host=host, port=port)


__all__ = ["BuildRequest", "BuildResponse", "HealthResponse", "create_app", "run_service"]
