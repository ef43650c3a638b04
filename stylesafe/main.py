import logging
import os
from pathlib import Path
from uuid import uuid4

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stylesafe.api.v1.routes import router as api_v1_router
from stylesafe.config import get_settings
from stylesafe.services.errors import StyleSafeError

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"


def load_environment(env_path: Path | None = None) -> bool:
    """Load variables from the project `.env` file, if there is one."""
    env_path = env_path or Path(__file__).parent.parent / ".env"
    print("\n" + "=" * 60)
    print("LOADING ENVIRONMENT CONFIGURATION")
    print("=" * 60)
    print(f"Looking for .env file at: {env_path}")

    loaded = False
    if env_path.exists():
        loaded = load_dotenv(dotenv_path=env_path, override=True)
        print("✓ .env file loaded")
    else:
        print("⚠ .env file not found, using process environment and defaults")

    token = os.environ.get("REPLICATE_API_TOKEN")
    if token:
        print(f"✓ REPLICATE_API_TOKEN loaded: {token[:6]}...")
    else:
        print("⚠ REPLICATE_API_TOKEN not set, the mock generation provider will be used")
    print("=" * 60 + "\n")
    return loaded


def _problem_response(problem: dict, status_code: int) -> JSONResponse:
    return JSONResponse(content=problem, status_code=status_code, media_type=PROBLEM_MEDIA_TYPE)


def create_app() -> FastAPI:
    """
    Application factory for the style-safe generation API.

    Loads `.env`, configures logging, and registers the problem+json handlers.
    """
    load_environment()
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="Style-Safe Generation API",
        version="0.1.0",
        description="Deterministic prompt remixing and style-only batch image generation.",
    )

    @app.exception_handler(StyleSafeError)
    async def handle_pipeline_error(request: Request, exc: StyleSafeError) -> JSONResponse:
        problem = exc.to_problem()
        logger.warning("%s %s -> %d %s", request.method, request.url.path, exc.status, exc.detail)
        return _problem_response(problem, exc.status)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        problem = {
            "type": "urn:stylesafe:validation",
            "title": "Invalid input",
            "detail": details,
            "status": 400,
            "instance": str(uuid4()),
        }
        return _problem_response(problem, 400)

    # Infrastructure-level health check (non-versioned) primarily for ops.
    @app.get("/health", tags=["health"])
    async def root_health_check() -> dict:
        """Simple root health check endpoint."""
        return {"status": "ok"}

    app.include_router(api_v1_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.environ.get("HOST", "127.0.0.1"), port=int(os.environ.get("PORT", "8000")))
