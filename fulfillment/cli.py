"""Command-line entry point for the fulfillment service.

Examples::

    fulfillment lookup 123456789012
    fulfillment generate 123456789012 --count 2 --first-name Mary --last-name Bantin
    fulfillment update 123456789012 --pdf-id abc --pdf-url https://...
    fulfillment serve --port 8080

Every command except ``serve`` prints one JSON document in the same shape as
the HTTP API.

**Exit Codes:**
- 0: ``ok`` is true
- 1: ``ok`` is false (validation, not found, upstream or configuration error)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

from . import records
from .config_loader import load_config
from .errors import FulfillmentError
from .logging_config import configure_logging
from .orchestrator import (
    FulfillmentServices,
    PipelineSettings,
    build_label_request,
    run_fulfillment,
)
from .utils import validate_form_id

LOG = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Order not found for that Form ID."


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fulfillment",
        description="Pet food pantry order fulfillment: lookup, bag labels, record update",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to parameters.yaml (default: $FULFILLMENT_CONFIG or config/parameters.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: logging.level from the configuration)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    lookup = subparsers.add_parser("lookup", help="Look up an intake record by Form ID")
    lookup.add_argument("form_id", help="12-digit Form ID")

    generate = subparsers.add_parser("generate", help="Generate, merge and archive bag labels")
    generate.add_argument("form_id", help="12-digit Form ID")
    generate.add_argument("--count", required=True, help="Number of bags (1-5)")
    generate.add_argument("--first-name", default="")
    generate.add_argument("--last-name", default="")
    generate.add_argument("--pickup-window", default="")
    generate.add_argument("--flea-provided", action="store_true")

    update = subparsers.add_parser("update", help="Write a generated document back to the record")
    update.add_argument("form_id", help="12-digit Form ID")
    update.add_argument("--pdf-id", default="")
    update.add_argument("--pdf-url", default="")
    update.add_argument("--flea-provided", action="store_true")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8080)

    return parser


def _lookup(args: argparse.Namespace, get_services: Callable[[], FulfillmentServices], config: Dict[str, Any]) -> Dict[str, Any]:
    form_id = validate_form_id(args.form_id)
    services = get_services()
    record = records.lookup_record(services.record_store, form_id, services.record_settings)
    if record is None:
        return {"ok": False, "error": NOT_FOUND_MESSAGE}
    return {"ok": True, "data": record.to_dict()}


def _generate(args: argparse.Namespace, get_services: Callable[[], FulfillmentServices], config: Dict[str, Any]) -> Dict[str, Any]:
    request = build_label_request(
        args.form_id,
        args.count,
        first_name=args.first_name,
        last_name=args.last_name,
        pickup_window=args.pickup_window,
        flea_provided=args.flea_provided,
        max_count=PipelineSettings.from_config(config).max_count,
    )
    return run_fulfillment(request, get_services()).to_dict()


def _update(args: argparse.Namespace, get_services: Callable[[], FulfillmentServices], config: Dict[str, Any]) -> Dict[str, Any]:
    form_id = validate_form_id(args.form_id)
    services = get_services()
    result = records.update_after_generate(
        services.record_store,
        form_id,
        args.pdf_id,
        args.pdf_url,
        args.flea_provided,
        settings=services.record_settings,
    )
    return result.to_dict()


COMMANDS = {
    "lookup": _lookup,
    "generate": _generate,
    "update": _update,
}


def serve(config: Dict[str, Any], host: str, port: int) -> None:
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


def main(
    argv: Optional[Sequence[str]] = None,
    services: Optional[FulfillmentServices] = None,
) -> int:
    """Run one CLI command; returns the process exit code."""
    args = build_parser().parse_args(argv)
    config = load_config(args.config)

    logging_config = config.get("logging", {})
    configure_logging(
        args.log_level or logging_config.get("level", "INFO"),
        logging_config.get("log_dir"),
    )

    if args.command == "serve":
        serve(config, args.host, args.port)
        return 0

    def get_services() -> FulfillmentServices:
        return services if services is not None else FulfillmentServices.from_config(config)

    try:
        payload = COMMANDS[args.command](args, get_services, config)
    except FulfillmentError as exc:
        payload = {"ok": False, "error": exc.message}
        if exc.stage is not None:
            payload["stage"] = exc.stage.value

    print(json.dumps(payload, indent=2))
    return 0 if payload.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())
