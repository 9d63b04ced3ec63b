from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .logging_setup import log_event
from .services.gbp import GBPAPIError, GBPAuthError, GBPSetupError
from .services.instagram_graph import GraphAPIError, InstagramAuthError, InstagramSetupError
from .services.llm import LLMError

TOKEN_EXPIRED = "TOKEN_EXPIRED"

# Upstream statuses a non-auth GBP error keeps; anything else is a 502
PASSTHROUGH_STATUSES = {400, 404, 500}

def _expired_response(provider: str, message: str) -> JSONResponse:
    return JSONResponse({"error": message, "code": TOKEN_EXPIRED, "provider": provider}, status_code=401)

def _setup_response(provider: str, message: str, status: int | None) -> JSONResponse:
    return JSONResponse({"error": message, "provider": provider}, status_code=status or 400)

async def instagram_auth_error_handler(request: Request, exc: InstagramAuthError):
    log_event("instagram_auth_error", level="warning", path=request.url.path, status=exc.status, meta_error_code=exc.code)
    return _expired_response("instagram", exc.message)

async def instagram_setup_error_handler(request: Request, exc: InstagramSetupError):
    log_event("instagram_setup_error", level="warning", path=request.url.path, status=exc.status)
    return _setup_response("instagram", exc.message, exc.status)

async def graph_api_error_handler(request: Request, exc: GraphAPIError):
    log_event("graph_api_error", level="warning", path=request.url.path, status=exc.status, meta_error_code=exc.code)
    return JSONResponse(
        {"error": exc.message, "provider": "instagram", "meta_error_code": exc.code, "fbtrace_id": exc.fbtrace_id},
        status_code=502,
    )

async def gbp_auth_error_handler(request: Request, exc: GBPAuthError):
    log_event("gbp_auth_error", level="warning", path=request.url.path, status=exc.status)
    return _expired_response("google_gbp", exc.message)

async def gbp_setup_error_handler(request: Request, exc: GBPSetupError):
    log_event("gbp_setup_error", level="warning", path=request.url.path, status=exc.status)
    return _setup_response("google_gbp", exc.message, exc.status)

async def gbp_api_error_handler(request: Request, exc: GBPAPIError):
    log_event("gbp_api_error_response", level="warning", path=request.url.path, status=exc.status)
    status = exc.status if exc.status in PASSTHROUGH_STATUSES else 502
    return JSONResponse({"error": exc.message, "provider": "google_gbp"}, status_code=status)

async def llm_error_handler(request: Request, exc: LLMError):
    log_event("llm_error", level="error", path=request.url.path, error=str(exc))
    return JSONResponse({"error": str(exc), "provider": "openai"}, status_code=502)

def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InstagramSetupError, instagram_setup_error_handler)
    app.add_exception_handler(InstagramAuthError, instagram_auth_error_handler)
    app.add_exception_handler(GraphAPIError, graph_api_error_handler)
    app.add_exception_handler(GBPSetupError, gbp_setup_error_handler)
    app.add_exception_handler(GBPAuthError, gbp_auth_error_handler)
    app.add_exception_handler(GBPAPIError, gbp_api_error_handler)
    app.add_exception_handler(LLMError, llm_error_handler)
