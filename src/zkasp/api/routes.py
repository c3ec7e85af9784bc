"""REST API endpoints for the ASP."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from zkasp import __version__
from zkasp.config import Settings, get_settings, setup_logging
from zkasp.core.orchestrator import Orchestrator
from zkasp.exceptions import ASPException
from zkasp.models.schemas import (
    Accepted,
    BurnRequest,
    DepositRequest,
    MintRequest,
    NullifierResponse,
    OperationResult,
    ProofJobResponse,
    Rejected,
    StatusResponse,
    SwapRequest,
    SyncCommitmentsRequest,
    SyncCommitmentsResponse,
    TreePathResponse,
    TreeRootResponse,
    WithdrawRequest,
)
from zkasp.service import Service
from zkasp.utils.encoding import bytes_to_hex

logger = logging.getLogger(__name__)

# HTTP status for each rejection code; anything else is a 500
STATUS_BY_CODE = {
    "invalid_input": 400,
    "config_error": 400,
    "unknown_leaf": 404,
    "unknown_root": 409,
    "duplicate_commitment": 409,
    "already_spent": 409,
    "relay_conflict": 409,
    "tree_full": 503,
    "prover_error": 503,
    "prover_timeout": 503,
    "prover_crashed": 503,
    "prover_unavailable": 503,
    "proof_failed": 503,
    "invalid_ledger_state": 503,
    "storage_error": 503,
    "reconciliation_divergence": 503,
    "relay_error": 502,
    "relay_submit_error": 502,
    "relay_submit_failed": 502,
    "relay_ambiguous": 502,
    "relay_needs_operator": 502,
    "rpc_error": 502,
}


REJECTED = {status: {"model": Rejected} for status in (400, 404, 409, 502, 503)}


def http_status(code: str) -> int:
    return STATUS_BY_CODE.get(code, 500)


def _respond(result: OperationResult):
    if isinstance(result, Accepted):
        return result
    return JSONResponse(status_code=http_status(result.code), content=result.model_dump(mode="json"))


def _http_error(error: ASPException) -> HTTPException:
    return HTTPException(status_code=http_status(error.code), detail=str(error))


def create_app(orchestrator: Optional[Orchestrator] = None,
               settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    With no ``orchestrator`` the app builds a full ``Service`` on startup,
    from ``settings`` or else the environment, and shuts it down on exit.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if orchestrator is not None:
            app.state.orchestrator = orchestrator
            yield
            return

        if settings is None:
            service_settings = get_settings()
            setup_logging(service_settings)
        else:
            service_settings = settings
        service = Service(service_settings)
        await service.start()
        app.state.service = service
        app.state.orchestrator = service.orchestrator
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title="ZK-ASP REST API",
        description="Association-set provider for a shielded pool with private CLMM operations",
        version=__version__,
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Pydantic validation errors are client errors: 400, not 422
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        error_messages = []
        for error in exc.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            error_messages.append(f"{field}: {error['msg']}")
        return JSONResponse(status_code=400, content={"detail": "; ".join(error_messages)})

    def asp(request: Request) -> Orchestrator:
        return request.app.state.orchestrator

    # ========================================================================
    # Operations
    # ========================================================================

    @app.post("/deposit", response_model=Accepted, responses=REJECTED, tags=["Operations"])
    async def deposit(body: DepositRequest, request: Request):
        """Relay a deposit; the commitment is added to the tree once it lands."""
        return _respond(await asp(request).deposit(body))

    @app.post("/withdraw", response_model=Accepted, responses=REJECTED, tags=["Operations"])
    async def withdraw(body: WithdrawRequest, request: Request):
        return _respond(await asp(request).withdraw(body))

    @app.post("/swap", response_model=Accepted, responses=REJECTED, tags=["Operations"])
    async def swap(body: SwapRequest, request: Request):
        return _respond(await asp(request).swap(body))

    @app.post("/mint", response_model=Accepted, responses=REJECTED, tags=["Operations"])
    async def mint(body: MintRequest, request: Request):
        return _respond(await asp(request).mint(body))

    @app.post("/burn", response_model=Accepted, responses=REJECTED, tags=["Operations"])
    async def burn(body: BurnRequest, request: Request):
        return _respond(await asp(request).burn(body))

    # ========================================================================
    # Tree and nullifier reads
    # ========================================================================

    @app.get("/tree/root", response_model=TreeRootResponse, tags=["Tree"])
    async def tree_root(request: Request):
        root, leaf_count = asp(request).get_root()
        return TreeRootResponse(root=root, leaf_count=leaf_count)

    @app.get("/tree/path/{leaf_index}", response_model=TreePathResponse, tags=["Tree"])
    async def tree_path(leaf_index: int, request: Request):
        try:
            path = asp(request).get_path(leaf_index)
        except ASPException as e:
            raise _http_error(e) from e
        return TreePathResponse(
            leaf_index=path.leaf_index,
            commitment=bytes_to_hex(path.leaf),
            path_elements=[bytes_to_hex(s) for s in path.siblings],
            path_indices=list(path.directions),
            root=bytes_to_hex(path.root),
        )

    @app.get("/nullifier/{value}", response_model=NullifierResponse, tags=["Tree"])
    async def nullifier_status(value: str, request: Request):
        try:
            return asp(request).get_nullifier_status(value)
        except ASPException as e:
            raise _http_error(e) from e

    @app.post("/sync-commitments", response_model=SyncCommitmentsResponse, tags=["Tree"])
    async def sync_commitments(body: SyncCommitmentsRequest, request: Request):
        """Look up the leaf index of each commitment (null when not in the tree)."""
        return SyncCommitmentsResponse(commitments=asp(request).find_commitments(body.commitments))

    # ========================================================================
    # System
    # ========================================================================

    @app.get("/jobs/{job_id}", response_model=ProofJobResponse, tags=["System"])
    async def proof_job(job_id: str, request: Request):
        job = asp(request).get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Proof job {job_id} not found")
        return job

    @app.get("/status", response_model=StatusResponse, tags=["System"])
    async def status(request: Request):
        return await asp(request).status()

    return app


app = create_app()


def main():
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
