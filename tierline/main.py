import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError

# Load env from tierline/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from tierline.core.config import settings, validate_config  # noqa: E402
from tierline.core.database import create_all_tables  # noqa: E402
from tierline.core.logging import configure_logging  # noqa: E402
from tierline.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from tierline.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from tierline.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from tierline.api import analytics, billing, health, meters, metrics, tiers, usage  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("tierline")
    logger.info("Starting tierline...")
    app.state.startup_time = time.time()
    create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("tierline").info("Stopping tierline...")


app = FastAPI(title="tierline - usage metering and tier enforcement", lifespan=lifespan)

# Middlewares
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(usage.router)
app.include_router(meters.router)
app.include_router(tiers.router)
app.include_router(billing.router)
app.include_router(analytics.router)
app.include_router(health.root_router)
app.include_router(metrics.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tierline.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=settings.ENV == "development")
