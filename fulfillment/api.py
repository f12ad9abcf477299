"""HTTP surface of the fulfillment service (FastAPI).

``create_app()`` wires CORS, request logging, error handlers and the routes
into one FastAPI instance. Every response carries ``ok``; failures are
``{"ok": false, "error": ...}`` with the status code of the error class
(see errors.py), plus ``stage`` when a pipeline stage failed.

Routes
------
POST /lookup                  {formId}
POST /generate-labels         {formId, firstName, lastName, pickupWindow, count, fleaProvided}
POST /update-after-generate   {formId, pdfId, pdfUrl, fleaProvided}
GET  /, /health               liveness

Input is validated before the collaborators are built, so a malformed
request is rejected without touching credentials or the network.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__, records
from .config_loader import load_config
from .errors import FulfillmentError, NotFoundError
from .orchestrator import (
    FulfillmentServices,
    PipelineSettings,
    build_label_request,
    run_fulfillment,
)
from .utils import to_bool, validate_form_id

LOG = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Order not found for that Form ID."


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LookupBody(_Body):
    form_id: Any = Field(default=None, alias="formId")


class GenerateLabelsBody(_Body):
    form_id: Any = Field(default=None, alias="formId")
    first_name: Any = Field(default="", alias="firstName")
    last_name: Any = Field(default="", alias="lastName")
    pickup_window: Any = Field(default="", alias="pickupWindow")
    count: Any = None
    flea_provided: Any = Field(default=False, alias="fleaProvided")


class UpdateAfterGenerateBody(_Body):
    form_id: Any = Field(default=None, alias="formId")
    pdf_id: Any = Field(default=None, alias="pdfId")
    pdf_url: Any = Field(default=None, alias="pdfUrl")
    flea_provided: Any = Field(default=False, alias="fleaProvided")


def error_response(status_code: int, message: str, stage: Optional[str] = None) -> JSONResponse:
    content: Dict[str, Any] = {"ok": False, "error": message}
    if stage:
        content["stage"] = stage
    return JSONResponse(status_code=status_code, content=content)


async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    if exc.status_code >= 500:
        LOG.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    stage = exc.stage.value if exc.stage is not None else None
    return error_response(exc.status_code, exc.message, stage)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code in (404, 405):
        return error_response(404, "Route not found")
    return error_response(exc.status_code, str(exc.detail))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(400, "Invalid JSON body.")


class ServiceRegistry:
    """Builds the collaborators on first use and shares them across requests."""

    def __init__(
        self,
        config: Dict[str, Any],
        factory: Optional[Callable[[Dict[str, Any]], FulfillmentServices]] = None,
        services: Optional[FulfillmentServices] = None,
    ):
        self.config = config
        self._factory = factory or FulfillmentServices.from_config
        self._services = services
        self._lock = threading.Lock()

    def get(self) -> FulfillmentServices:
        with self._lock:
            if self._services is None:
                self._services = self._factory(self.config)
            return self._services


def create_app(
    config: Optional[Dict[str, Any]] = None,
    services: Optional[FulfillmentServices] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Parameters
    ----------
    config : dict, optional
        Loaded configuration; defaults to load_config().
    services : FulfillmentServices, optional
        Pre-built collaborators (tests, dry runs). When omitted they are
        built from the configuration on the first request that needs them.
    """
    config = config if config is not None else load_config()
    api_config = config.get("api", {})
    service_name = api_config.get("service_name", "order-fulfillment")
    max_count = PipelineSettings.from_config(config).max_count
    registry = ServiceRegistry(config, services=services)

    app = FastAPI(title=service_name, version=__version__)
    app.state.config = config
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=api_config.get("allowed_origins", []),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FulfillmentError, fulfillment_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        LOG.info("%s %s", request.method, request.url.path)
        try:
            return await call_next(request)
        except Exception as exc:
            LOG.exception("Unhandled error on %s %s", request.method, request.url.path)
            return error_response(500, str(exc) or exc.__class__.__name__)

    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "service": service_name,
            "status": "healthy",
            "version": __version__,
            "time": datetime.now(timezone.utc).isoformat(),
        }

    app.add_api_route("/", health, methods=["GET"])
    app.add_api_route("/health", health, methods=["GET"])

    @app.post("/lookup")
    def lookup(body: Optional[LookupBody] = None) -> Dict[str, Any]:
        body = body or LookupBody()
        form_id = validate_form_id(body.form_id)
        services = registry.get()
        record = records.lookup_record(services.record_store, form_id, services.record_settings)
        if record is None:
            raise NotFoundError(NOT_FOUND_MESSAGE)
        return {"ok": True, "data": record.to_dict()}

    @app.post("/generate-labels")
    def generate_labels(body: Optional[GenerateLabelsBody] = None) -> Dict[str, Any]:
        body = body or GenerateLabelsBody()
        label_request = build_label_request(
            body.form_id,
            body.count,
            first_name=body.first_name,
            last_name=body.last_name,
            pickup_window=body.pickup_window,
            flea_provided=body.flea_provided,
            max_count=max_count,
        )
        result = run_fulfillment(label_request, registry.get())
        return result.to_dict()

    @app.post("/update-after-generate")
    def update_after_generate(body: Optional[UpdateAfterGenerateBody] = None) -> Dict[str, Any]:
        body = body or UpdateAfterGenerateBody()
        form_id = validate_form_id(body.form_id)
        services = registry.get()
        result = records.update_after_generate(
            services.record_store,
            form_id,
            body.pdf_id,
            body.pdf_url,
            flea_provided=to_bool(body.flea_provided),
            settings=services.record_settings,
        )
        return result.to_dict()

    return app
